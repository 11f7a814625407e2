"""
Tests for playbook parsing: actions, blocks, includes, roles and tags.
"""

import pytest
from pathlib import Path

from stagehand.engine.errors import ParseError, UnsupportedFeatureError
from stagehand.engine.playbook import Block, PlaybookParser, Task, iter_tasks, should_run


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def parse(tmp_path: Path, content: str):
    return PlaybookParser(write(tmp_path / "site.yml", content)).parse()


def tasks_of(play):
    return list(iter_tasks(play.tasks))


class TestTaskParsing:
    """Tests for individual task entries."""

    def test_actions_and_keywords(self, tmp_path: Path):
        plays = parse(tmp_path, """
- name: Web
  hosts: webservers
  vars:
    port: 80
  tasks:
    - name: Check
      stagehand.builtin.command: uptime
      register: up
      changed_when: false
      retries: 3
      until: up.rc == 0
      notify: restart
    - debug:
        msg: hi
""")

        play = plays[0]
        assert play.name == "Web"
        assert play.hosts == "webservers"
        assert play.vars == {"port": 80}

        check, debug = play.tasks
        assert check.module == "command"
        assert check.args == {"_raw_params": "uptime"}
        assert check.register == "up"
        assert check.changed_when is False
        assert check.retries == 3
        assert check.notify == ["restart"]
        assert debug.name == "debug"
        assert debug.args == {"msg": "hi"}

    def test_free_form_inline_options(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  tasks:
    - shell: ./configure && make chdir=/src creates=/src/app executable=/bin/bash
    - raw: echo chdir=/tmp
""")

        shell, raw = plays[0].tasks
        assert shell.args == {"_raw_params": "./configure && make", "chdir": "/src",
                              "creates": "/src/app", "executable": "/bin/bash"}
        assert raw.args == {"_raw_params": "echo chdir=/tmp"}

    def test_key_value_args_and_args_keyword(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  tasks:
    - copy: content="hello world" dest=/tmp/x
      args:
        mode: "0600"
    - meta: flush_handlers
    - fail: something broke
""")

        copy, meta, fail = plays[0].tasks
        assert copy.args == {"content": "hello world", "dest": "/tmp/x", "mode": "0600"}
        assert meta.args == {"_raw_params": "flush_handlers"}
        assert meta.name == "meta: flush_handlers"
        assert fail.args == {"msg": "something broke"}

    def test_with_items_flattens_one_level(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  tasks:
    - debug: var=item
      with_items:
        - a
        - [b, c]
        - [[d]]
""")

        assert plays[0].tasks[0].loop == ["a", "b", "c", ["d"]]

    def test_loop_control(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  tasks:
    - debug: var=pkg
      loop: "{{ packages }}"
      loop_control:
        loop_var: pkg
""")

        task = plays[0].tasks[0]
        assert task.loop == "{{ packages }}"
        assert task.loop_var == "pkg"

    def test_unknown_action(self, tmp_path: Path):
        with pytest.raises(UnsupportedFeatureError, match="Action 'apt' is not supported"):
            parse(tmp_path, "- hosts: all\n  tasks:\n    - apt: name=nginx\n")

    @pytest.mark.parametrize("keyword", ["become", "delegate_to", "async", "run_once"])
    def test_unsupported_task_keyword(self, tmp_path: Path, keyword):
        with pytest.raises(UnsupportedFeatureError, match=keyword):
            parse(tmp_path, f"- hosts: all\n  tasks:\n    - command: id\n      {keyword}: x\n")

    def test_unsupported_play_keyword(self, tmp_path: Path):
        with pytest.raises(UnsupportedFeatureError, match="serial"):
            parse(tmp_path, "- hosts: all\n  serial: 2\n  tasks: []\n")

    def test_unknown_play_keyword(self, tmp_path: Path):
        with pytest.raises(ParseError, match="Unknown play keyword 'taks'"):
            parse(tmp_path, "- hosts: all\n  taks: []\n")

    def test_two_actions(self, tmp_path: Path):
        with pytest.raises(ParseError, match="more than one action"):
            parse(tmp_path, "- hosts: all\n  tasks:\n    - command: id\n      shell: id\n")

    def test_no_action(self, tmp_path: Path):
        with pytest.raises(ParseError, match="no action"):
            parse(tmp_path, "- hosts: all\n  tasks:\n    - name: nothing\n")

    def test_missing_hosts(self, tmp_path: Path):
        with pytest.raises(ParseError, match="hosts"):
            parse(tmp_path, "- tasks: []\n")

    def test_play_numbers(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: [web1, web2]
  max_fail_percentage: 30
  timeout: 60
  strategy: linear
  tasks: []
""")

        play = plays[0]
        assert play.hosts == "web1,web2"
        assert play.max_fail_percentage == 30.0
        assert play.timeout == 60.0
        assert play.gated

    def test_bad_number(self, tmp_path: Path):
        with pytest.raises(ParseError, match="max_fail_percentage"):
            parse(tmp_path, "- hosts: all\n  max_fail_percentage: lots\n")

    def test_unknown_strategy(self, tmp_path: Path):
        with pytest.raises(UnsupportedFeatureError, match="strategy"):
            parse(tmp_path, "- hosts: all\n  strategy: debug\n")

    def test_gated(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
- hosts: all
  any_errors_fatal: true
- hosts: all
  strategy: free
""")

        assert [p.gated for p in plays] == [False, True, False]

    def test_play_check_mode_is_task_default(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  check_mode: true
  tasks:
    - command: id
    - command: uptime
      check_mode: false
  handlers:
    - name: restart
      command: restart
""")

        play = plays[0]
        assert play.check_mode is True
        assert [t.check_mode for t in tasks_of(play)] == [True, False]
        assert play.handlers[0].check_mode is True

    def test_gather_facts(self, tmp_path: Path):
        assert parse(tmp_path, "- hosts: all\n  gather_facts: false\n")[0].check_mode is None
        with pytest.raises(UnsupportedFeatureError, match="fact gathering"):
            parse(tmp_path, "- hosts: all\n  gather_facts: true\n")

    def test_vars_files(self, tmp_path: Path):
        write(tmp_path / "vars" / "common.yml", "port: 8080\nenv: prod\n")
        plays = parse(tmp_path, """
- hosts: all
  vars:
    port: 80
  vars_files:
    - vars/common.yml
""")

        assert plays[0].vars == {"port": 8080, "env": "prod"}

    def test_missing_vars_file(self, tmp_path: Path):
        with pytest.raises(ParseError, match="vars_file not found"):
            parse(tmp_path, "- hosts: all\n  vars_files: [nope.yml]\n")

    def test_play_order_of_sections(self, tmp_path: Path):
        write(tmp_path / "roles" / "base" / "tasks" / "main.yml", "- debug: msg=role\n")
        plays = parse(tmp_path, """
- hosts: all
  post_tasks:
    - debug: msg=post
  tasks:
    - debug: msg=task
  roles:
    - base
  pre_tasks:
    - debug: msg=pre
""")

        assert [t.args["msg"] for t in tasks_of(plays[0])] == ["pre", "role", "task", "post"]


class TestBlocks:
    """Tests for block parsing."""

    def test_block_sections_and_inheritance(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  tags: [deploy]
  tasks:
    - name: Outer
      when: ready
      tags: web
      vars:
        scope: block
      block:
        - command: /bin/false
          tags: inner
          when: inner_ok
      rescue:
        - debug: msg=rescued
      always:
        - debug: msg=always
""")

        block = plays[0].tasks[0]
        assert isinstance(block, Block)
        assert block.when == ["ready"]
        assert block.vars == {"scope": "block"}
        inner = block.block[0]
        assert inner.tags == ["deploy", "web", "inner"]
        assert inner.when == ["inner_ok"]
        assert block.rescue[0].tags == ["deploy", "web"]
        assert len(block.tasks()) == 3

    def test_block_ignore_errors_applies_to_tasks(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  tasks:
    - ignore_errors: true
      block:
        - command: /bin/false
        - block:
            - command: /bin/false
""")

        assert all(t.ignore_errors for t in tasks_of(plays[0]))

    def test_unknown_block_keyword(self, tmp_path: Path):
        with pytest.raises(ParseError, match="Unknown block keyword"):
            parse(tmp_path, "- hosts: all\n  tasks:\n    - block: []\n      command: id\n")

    def test_block_settings_pushed_to_tasks(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  tasks:
    - ignore_unreachable: true
      check_mode: true
      timeout: 30
      environment:
        MODE: block
        LANG: C
      block:
        - command: id
          check_mode: false
          environment:
            MODE: task
      rescue:
        - block:
            - command: uptime
""")

        first, second = tasks_of(plays[0])
        assert first.ignore_unreachable and second.ignore_unreachable
        assert first.check_mode is False
        assert second.check_mode is True
        assert first.timeout == second.timeout == 30
        assert first.environment == {"MODE": "task", "LANG": "C"}
        assert second.environment == {"MODE": "block", "LANG": "C"}

    @pytest.mark.parametrize("keyword", ["loop: [1]", "register: out", "notify: restart", "until: done"])
    def test_task_only_keyword_on_block(self, tmp_path: Path, keyword: str):
        with pytest.raises(ParseError, match="not valid on a block"):
            parse(tmp_path, f"- hosts: all\n  tasks:\n    - block: []\n      {keyword}\n")

    @pytest.mark.parametrize("entry", [
        "- block: []\n      any_errors_fatal: true",
        "- command: id\n      any_errors_fatal: true",
    ])
    def test_any_errors_fatal_below_play(self, tmp_path: Path, entry: str):
        with pytest.raises(UnsupportedFeatureError, match="any_errors_fatal"):
            parse(tmp_path, f"- hosts: all\n  tasks:\n    {entry}\n")


class TestIncludes:
    """Tests for include_tasks/import_tasks."""

    def test_include_tasks(self, tmp_path: Path):
        write(tmp_path / "tasks" / "setup.yml", """
- debug: msg=one
- include_tasks: nested.yml
""")
        write(tmp_path / "tasks" / "nested.yml", "- debug: msg=two\n  vars:\n    x: task\n")
        plays = parse(tmp_path, """
- hosts: all
  tasks:
    - include_tasks: tasks/setup.yml
      when: enabled
      tags: setup
      vars:
        x: include
        y: include
""")

        one, two = tasks_of(plays[0])
        assert one.args == {"msg": "one"}
        assert one.when == ["enabled"]
        assert one.tags == ["setup"]
        assert one.vars == {"x": "include", "y": "include"}
        assert two.args == {"msg": "two"}
        assert two.vars == {"x": "task", "y": "include"}

    def test_import_tasks_with_file_key(self, tmp_path: Path):
        write(tmp_path / "more.yml", "- debug: msg=more\n")
        plays = parse(tmp_path, "- hosts: all\n  tasks:\n    - import_tasks:\n        file: more.yml\n")

        assert plays[0].tasks[0].args == {"msg": "more"}

    def test_recursive_include(self, tmp_path: Path):
        write(tmp_path / "loop.yml", "- include_tasks: loop.yml\n")

        with pytest.raises(ParseError, match="Recursive include"):
            parse(tmp_path, "- hosts: all\n  tasks:\n    - include_tasks: loop.yml\n")

    def test_missing_include(self, tmp_path: Path):
        with pytest.raises(ParseError, match="Tasks file not found"):
            parse(tmp_path, "- hosts: all\n  tasks:\n    - include_tasks: nope.yml\n")

    def test_tasks_file_must_be_list(self, tmp_path: Path):
        write(tmp_path / "bad.yml", "debug: msg=x\n")

        with pytest.raises(ParseError, match="must contain a list"):
            parse(tmp_path, "- hosts: all\n  tasks:\n    - include_tasks: bad.yml\n")


class TestRoles:
    """Tests for role expansion."""

    @pytest.fixture
    def role(self, tmp_path: Path) -> Path:
        role = tmp_path / "roles" / "nginx"
        write(role / "tasks" / "main.yml", "- name: Install\n  command: install nginx {{ port }}\n  notify: reload\n")
        write(role / "defaults" / "main.yml", "port: 80\nworkers: 2\n")
        write(role / "vars" / "main.yml", "config_dir: /etc/nginx\n")
        write(role / "handlers" / "main.yml", "- name: reload\n  command: nginx -s reload\n")
        return role

    def test_role_parts(self, tmp_path: Path, role: Path):
        plays = parse(tmp_path, """
- hosts: all
  roles:
    - role: nginx
      port: 8080
      tags: web
  handlers:
    - name: play handler
      command: echo
""")

        play = plays[0]
        task = play.tasks[0]
        assert task.role == "nginx"
        assert task.display_name == "nginx : Install"
        assert task.role_vars == {"config_dir": "/etc/nginx", "port": 8080}
        assert task.tags == ["web"]
        assert play.role_defaults == {"port": 80, "workers": 2}
        assert [h.name for h in play.handlers] == ["play handler", "reload"]
        assert play.handlers[1].role == "nginx"

    def test_role_runs_once_per_parameters(self, tmp_path: Path, role: Path):
        plays = parse(tmp_path, """
- hosts: all
  roles:
    - nginx
    - nginx
    - role: nginx
      port: 8080
""")

        assert len(plays[0].tasks) == 2

    def test_role_dependencies(self, tmp_path: Path, role: Path):
        write(tmp_path / "roles" / "common" / "tasks" / "main.yml", "- debug: msg=common\n")
        write(role / "meta" / "main.yml", "dependencies:\n  - common\n")

        plays = parse(tmp_path, "- hosts: all\n  roles: [nginx]\n")

        assert [t.display_name for t in plays[0].tasks] == ["common : debug", "nginx : Install"]

    def test_include_role(self, tmp_path: Path, role: Path):
        plays = parse(tmp_path, """
- hosts: all
  tasks:
    - include_role:
        name: nginx
      when: web_enabled
      vars:
        port: 9090
""")

        task = plays[0].tasks[0]
        assert task.when == ["web_enabled"]
        assert task.role_vars["port"] == 9090

    def test_missing_role(self, tmp_path: Path):
        with pytest.raises(ParseError, match="Role not found: ghost"):
            parse(tmp_path, "- hosts: all\n  roles: [ghost]\n")


class TestHandlers:
    """Tests for handler parsing."""

    def test_listen_without_name(self, tmp_path: Path):
        plays = parse(tmp_path, """
- hosts: all
  handlers:
    - listen: web changed
      command: reload
""")

        assert plays[0].handlers[0].listen == ["web changed"]

    def test_handler_blocks_unsupported(self, tmp_path: Path):
        with pytest.raises(UnsupportedFeatureError):
            parse(tmp_path, "- hosts: all\n  handlers:\n    - block:\n        - command: id\n")


class TestShouldRun:
    """Tests for tag selection."""

    @pytest.mark.parametrize("tags,only,skip,expected", [
        ([], [], [], True),
        (["web"], ["web"], [], True),
        (["db"], ["web"], [], False),
        ([], ["web"], [], False),
        (["web"], [], ["web"], False),
        (["always"], ["web"], [], True),
        (["always"], [], ["always"], False),
        (["never", "debug"], [], [], False),
        (["never", "debug"], ["debug"], [], True),
        (["web"], ["tagged"], [], True),
        ([], ["untagged"], [], True),
        (["web"], [], ["tagged"], False),
        (["always"], [], ["all"], True),
    ])
    def test_should_run(self, tags, only, skip, expected):
        assert should_run(tags, only, skip) is expected

    def test_task_defaults(self):
        task = Task(name="t", module="command", args={})

        assert task.loop_var == "item"
        assert task.display_name == "t"
