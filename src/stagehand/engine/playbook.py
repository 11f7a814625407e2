# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Playbook Parser

Parses YAML playbooks into Play objects holding a tree of Task and Block
nodes. Roles, include_tasks/import_tasks and include_role/import_role are
expanded statically at parse time; inherited ``when`` conditions and tags
are copied onto the tasks they apply to.
"""

import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from stagehand.engine.errors import ParseError, UnsupportedFeatureError
from stagehand.engine.loader import DataLoader

logger = logging.getLogger(__name__)

FQCN_PREFIX = 'stagehand.builtin.'

# Built-in actions
ACTIONS = {
    'command', 'shell', 'raw', 'ping', 'debug', 'set_fact', 'fail',
    'assert', 'meta', 'copy', 'pause',
}

INCLUDE_KEYS = ('include_tasks', 'import_tasks', 'include_role', 'import_role')

# Task keys that are NOT action names
TASK_KEYWORDS = {
    'name', 'vars', 'tags', 'when', 'register', 'loop', 'with_items',
    'loop_control', 'until', 'retries', 'delay', 'changed_when',
    'failed_when', 'notify', 'listen', 'ignore_errors', 'ignore_unreachable',
    'check_mode', 'timeout', 'environment', 'args', 'block', 'rescue',
    'always',
}

PLAY_KEYWORDS = {
    'name', 'hosts', 'vars', 'vars_files', 'roles', 'pre_tasks', 'tasks',
    'post_tasks', 'handlers', 'max_fail_percentage', 'any_errors_fatal',
    'force_handlers', 'order', 'strategy', 'timeout', 'tags',
    'gather_facts', 'environment', 'check_mode',
}

# Keywords recognised but not implemented
UNSUPPORTED_KEYS = {
    'async', 'poll', 'delegate_to', 'delegate_facts', 'local_action',
    'include', 'serial', 'become', 'become_user', 'become_method',
    'run_once', 'throttle',
}

# Play keywords with no per-task or per-block form
PLAY_ONLY_KEYS = {'any_errors_fatal'}

# Task keywords that only make sense on a single task
BLOCK_REJECTED_KEYS = {
    'register', 'loop', 'with_items', 'loop_control', 'until', 'retries',
    'delay', 'changed_when', 'failed_when', 'notify', 'listen', 'args',
}

# Block keywords applied to every task inside the block
BLOCK_PUSHED_KEYS = ('ignore_errors', 'ignore_unreachable', 'check_mode', 'timeout', 'environment')

# Free-form options accepted inline by command-style actions
COMMAND_INLINE_OPTIONS = ('chdir', 'creates', 'removes', 'executable')
INLINE_ARG_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')


@dataclass
class Task:
    """
    A single task (or handler) in a playbook.

    ``when`` holds conditions that must all be true; ``role_vars`` feeds the
    role-vars layer when the task came from a role.
    """

    name: str
    module: str
    args: Dict[str, Any]
    register: Optional[str] = None
    when: List[Any] = field(default_factory=list)
    loop: Any = None
    loop_control: Dict[str, Any] = field(default_factory=dict)
    ignore_errors: bool = False
    ignore_unreachable: bool = False
    changed_when: Any = None
    failed_when: Any = None
    until: Any = None
    retries: Any = None
    delay: Any = None
    environment: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    notify: List[str] = field(default_factory=list)  # Handlers to notify
    listen: List[str] = field(default_factory=list)  # Handler triggers
    check_mode: Optional[bool] = None
    timeout: Any = None
    vars: Dict[str, Any] = field(default_factory=dict)
    role: Optional[str] = None
    role_vars: Dict[str, Any] = field(default_factory=dict)

    @property
    def loop_var(self) -> str:
        return self.loop_control.get('loop_var', 'item')

    @property
    def display_name(self) -> str:
        return f"{self.role} : {self.name}" if self.role else self.name

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass
class Block:
    """A block of tasks with optional rescue and always sections."""

    name: str = ""
    block: List["Node"] = field(default_factory=list)
    rescue: List["Node"] = field(default_factory=list)
    always: List["Node"] = field(default_factory=list)
    when: List[Any] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)

    def tasks(self) -> List[Task]:
        """Every task in the block, depth first."""
        return list(iter_tasks(self.block + self.rescue + self.always))

    def __repr__(self) -> str:
        return f"Block(name={self.name!r}, tasks={len(self.block)})"


Node = Union[Task, Block]


def iter_tasks(nodes: Sequence[Node]):
    """Yield the tasks of a node tree in order."""
    for node in nodes:
        if isinstance(node, Block):
            yield from iter_tasks(node.block)
            yield from iter_tasks(node.rescue)
            yield from iter_tasks(node.always)
        else:
            yield node


@dataclass
class Play:
    """Represents a single play in a playbook."""

    name: str
    hosts: str
    tasks: List[Node] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)  # Handler tasks
    vars: Dict[str, Any] = field(default_factory=dict)
    vars_files: List[str] = field(default_factory=list)
    role_defaults: Dict[str, Any] = field(default_factory=dict)
    max_fail_percentage: Optional[float] = None
    any_errors_fatal: bool = False
    force_handlers: bool = False
    order: str = "inventory"
    strategy: Optional[str] = None
    timeout: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    environment: Dict[str, Any] = field(default_factory=dict)
    check_mode: Optional[bool] = None

    @property
    def gated(self) -> bool:
        """Hosts must advance in lockstep."""
        return (self.max_fail_percentage is not None or self.any_errors_fatal
                or self.strategy == 'linear')

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


def should_run(task_tags: Sequence[str], only_tags: Sequence[str] = (),
               skip_tags: Sequence[str] = ()) -> bool:
    """
    Decide whether a task runs under --tags/--skip-tags.

    ``always`` tasks run unless ``always`` is skipped; ``never`` tasks run
    only when one of their tags is asked for explicitly. ``tagged``,
    ``untagged`` and ``all`` select by the presence of tags.
    """
    tags = set(task_tags)
    only = set(only_tags) or {'all'}
    skip = set(skip_tags)

    if skip:
        if 'all' in skip and 'always' not in tags:
            return False
        if 'tagged' in skip and tags:
            return False
        if 'untagged' in skip and not tags:
            return False
        if tags & skip:
            return False

    if 'always' in tags and 'always' not in skip:
        return True

    if 'never' in tags:
        return bool(tags & (only - {'all', 'tagged', 'untagged'}))

    if 'all' in only:
        return True
    if 'tagged' in only and tags:
        return True
    if 'untagged' in only and not tags:
        return True
    return bool(tags & only)


def _push_down(node: Node, settings: Dict[str, Any]) -> Node:
    """
    Copy of a node tree with block-level settings applied to every task.

    A task's own ``check_mode``, ``timeout`` and environment entries win
    over the enclosing block's.
    """
    if isinstance(node, Task):
        changes: Dict[str, Any] = {}
        for key, value in settings.items():
            if key == 'environment':
                changes[key] = {**value, **node.environment}
            elif key in ('ignore_errors', 'ignore_unreachable'):
                changes[key] = getattr(node, key) or bool(value)
            elif getattr(node, key) is None:
                changes[key] = value
        return replace(node, **changes)
    return replace(
        node,
        block=[_push_down(n, settings) for n in node.block],
        rescue=[_push_down(n, settings) for n in node.rescue],
        always=[_push_down(n, settings) for n in node.always],
    )


def _as_list(value: Any) -> List[Any]:
    """Ensure a value is a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _merge_unique(*lists: Sequence[str]) -> List[str]:
    result: List[str] = []
    for items in lists:
        for item in items:
            if item not in result:
                result.append(item)
    return result


def _tags(value: Any) -> List[str]:
    if isinstance(value, str):
        return [t.strip() for t in value.split(',') if t.strip()]
    return [str(t) for t in _as_list(value)]


class PlaybookParser:
    """
    Parse YAML playbooks into Play objects.

    Validates against the supported subset and raises errors for
    unsupported features.
    """

    def __init__(self, playbook_path: Union[str, Path], loader: Optional[DataLoader] = None):
        self.playbook_path = Path(playbook_path)
        self.loader = loader or DataLoader()
        self.plays: List[Play] = []
        self._base_dir = self.playbook_path.parent
        self._include_stack: List[Path] = []
        # Per-play state filled while expanding roles
        self._role_handlers: List[Task] = []
        self._role_defaults: Dict[str, Any] = {}
        self._roles_seen: Set[str] = set()

    def _error(self, message: str, path: Optional[Path] = None) -> ParseError:
        return ParseError(message, file_path=str(path or self.playbook_path))

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Returns:
            List of Play objects

        Raises:
            ParseError: If the playbook has syntax errors
            UnsupportedFeatureError: If playbook uses unsupported features
        """
        if not self.playbook_path.exists():
            raise self._error(f"Playbook not found: {self.playbook_path}")

        content = self.loader.read_text(self.playbook_path)
        documents = self.loader.load_all(content, str(self.playbook_path))

        all_plays: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            if isinstance(doc, list):
                all_plays.extend(doc)
            else:
                all_plays.append(doc)

        for play_data in all_plays:
            if not isinstance(play_data, dict):
                raise self._error(f"Play must be a mapping, got {type(play_data).__name__}")
            self.plays.append(self._parse_play(play_data))

        logger.debug("Parsed %d plays from %s", len(self.plays), self.playbook_path)
        return self.plays

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        """Parse a single play from YAML data."""
        for key in data:
            if key in UNSUPPORTED_KEYS:
                raise UnsupportedFeatureError(
                    f"'{key}' in plays",
                    suggestion=f"Remove '{key}' from the play"
                )
            if key not in PLAY_KEYWORDS:
                raise self._error(f"Unknown play keyword '{key}'")

        if 'hosts' not in data:
            raise self._error("Play missing required 'hosts' field")
        if data.get('gather_facts'):
            raise UnsupportedFeatureError("fact gathering",
                                          suggestion="Set 'gather_facts: false' or remove it")

        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        self._role_handlers = []
        self._role_defaults = {}
        self._roles_seen = set()

        play = Play(
            name=data.get('name') or str(hosts),
            hosts=str(hosts),
            max_fail_percentage=self._number(data.get('max_fail_percentage'), 'max_fail_percentage'),
            any_errors_fatal=bool(data.get('any_errors_fatal', False)),
            force_handlers=bool(data.get('force_handlers', False)),
            order=data.get('order', 'inventory'),
            strategy=data.get('strategy'),
            timeout=self._number(data.get('timeout'), 'timeout'),
            tags=_tags(data.get('tags')),
            environment=data.get('environment') or {},
            check_mode=None if data.get('check_mode') is None else bool(data['check_mode']),
        )
        if play.strategy not in (None, 'free', 'linear'):
            raise UnsupportedFeatureError(f"strategy '{play.strategy}'",
                                          suggestion="Use 'free' or 'linear'")

        vars_data = data.get('vars') or {}
        if not isinstance(vars_data, dict):
            raise self._error(f"'vars' must be a dictionary, got {type(vars_data).__name__}")
        play.vars = dict(vars_data)

        # vars_files are loaded immediately and override play vars
        play.vars_files = [str(v) for v in _as_list(data.get('vars_files'))]
        for vars_file in play.vars_files:
            vars_path = self._base_dir / vars_file
            if not vars_path.exists():
                raise self._error(f"vars_file not found: {vars_file}")
            play.vars.update(self.loader.load_vars_file(vars_path))

        inherited = {'tags': play.tags, 'when': []}

        pre_tasks = self._parse_nodes(data.get('pre_tasks'), self._base_dir, inherited)

        role_tasks: List[Node] = []
        for role_entry in _as_list(data.get('roles')):
            role_tasks.extend(self._load_role(role_entry, inherited))

        regular_tasks = self._parse_nodes(data.get('tasks'), self._base_dir, inherited)
        post_tasks = self._parse_nodes(data.get('post_tasks'), self._base_dir, inherited)

        # Combine in order: pre_tasks -> roles -> tasks -> post_tasks
        play.tasks = pre_tasks + role_tasks + regular_tasks + post_tasks

        # Handlers are never tag-filtered, so play tags are not applied
        handlers: List[Task] = []
        for handler_data in _as_list(data.get('handlers')):
            handlers.append(self._parse_handler(handler_data, self._base_dir))
        play.handlers = handlers + self._role_handlers
        play.role_defaults = self._role_defaults

        # A play-level check_mode is the default for every task and handler
        if play.check_mode is not None:
            settings = {'check_mode': play.check_mode}
            play.tasks = [_push_down(node, settings) for node in play.tasks]
            play.handlers = [_push_down(handler, settings) for handler in play.handlers]

        return play

    def _number(self, value: Any, key: str) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise self._error(f"'{key}' must be a number, got {value!r}")

    def _load_tasks_file(self, path: Path) -> List[Any]:
        data = self.loader.load_file(path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise self._error(f"Tasks file must contain a list: {path}", path)
        return data

    def _parse_nodes(self, items: Any, base_dir: Path, inherited: Dict[str, Any],
                     role: Optional[str] = None, role_vars: Optional[Dict[str, Any]] = None) -> List[Node]:
        """Parse a list of task/block entries."""
        nodes: List[Node] = []
        for data in _as_list(items):
            if not isinstance(data, dict):
                raise self._error(f"Task entry must be a mapping, got {type(data).__name__}")
            nodes.extend(self._parse_task_or_block(data, base_dir, inherited, role, role_vars))
        return nodes

    def _parse_task_or_block(self, data: Dict[str, Any], base_dir: Path, inherited: Dict[str, Any],
                             role: Optional[str], role_vars: Optional[Dict[str, Any]]) -> List[Node]:
        """Parse a task or block, returning node(s)."""
        if 'block' in data:
            return [self._parse_block(data, base_dir, inherited, role, role_vars)]
        if 'include_tasks' in data or 'import_tasks' in data:
            return self._parse_include_tasks(data, base_dir, inherited, role, role_vars)
        if 'include_role' in data or 'import_role' in data:
            return self._parse_include_role(data, inherited)
        return [self._parse_task(data, inherited, role, role_vars)]

    def _inherit(self, data: Dict[str, Any], inherited: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'tags': _merge_unique(inherited['tags'], _tags(data.get('tags'))),
            'when': inherited['when'] + _as_list(data.get('when')),
        }

    def _parse_block(self, data: Dict[str, Any], base_dir: Path, inherited: Dict[str, Any],
                     role: Optional[str], role_vars: Optional[Dict[str, Any]]) -> Block:
        """
        Parse a block.

        The block's own ``when`` is evaluated once on entry. Tags and the
        error, check mode, timeout and environment settings are pushed down
        to the tasks inside.
        """
        for key in data:
            if key in UNSUPPORTED_KEYS:
                raise UnsupportedFeatureError(f"'{key}' in blocks")
            if key in PLAY_ONLY_KEYS:
                raise UnsupportedFeatureError(f"'{key}' in blocks",
                                              suggestion=f"Set '{key}' on the play")
            if key in BLOCK_REJECTED_KEYS:
                raise self._error(f"'{key}' is not valid on a block")
            if key not in TASK_KEYWORDS:
                raise self._error(f"Unknown block keyword '{key}'")

        tags = _merge_unique(inherited['tags'], _tags(data.get('tags')))
        child_inherited = {'tags': tags, 'when': []}
        vars_data = data.get('vars') or {}
        if not isinstance(vars_data, dict):
            raise self._error("Block 'vars' must be a dictionary")

        block = Block(
            name=data.get('name', ''),
            block=self._parse_nodes(data.get('block'), base_dir, child_inherited, role, role_vars),
            rescue=self._parse_nodes(data.get('rescue'), base_dir, child_inherited, role, role_vars),
            always=self._parse_nodes(data.get('always'), base_dir, child_inherited, role, role_vars),
            when=inherited['when'] + _as_list(data.get('when')),
            tags=tags,
            vars=dict(vars_data),
        )
        settings = {key: data[key] for key in BLOCK_PUSHED_KEYS if data.get(key) is not None}
        if not isinstance(settings.get('environment', {}), dict):
            raise self._error("Block 'environment' must be a dictionary")
        if settings:
            block = _push_down(block, settings)
        return block

    def _parse_include_tasks(self, data: Dict[str, Any], base_dir: Path, inherited: Dict[str, Any],
                             role: Optional[str], role_vars: Optional[Dict[str, Any]]) -> List[Node]:
        """
        Parse include_tasks or import_tasks directive.

        Both are expanded statically; include-level ``when``, ``tags`` and
        ``vars`` apply to every included node.
        """
        tasks_file = data.get('include_tasks') or data.get('import_tasks')
        if isinstance(tasks_file, dict):
            tasks_file = tasks_file.get('file')
        if not tasks_file:
            raise self._error("include_tasks/import_tasks requires a file path")

        tasks_path = (base_dir / str(tasks_file)).resolve()
        if not tasks_path.exists():
            raise self._error(f"Tasks file not found: {tasks_file}")
        if tasks_path in self._include_stack:
            raise self._error(f"Recursive include of {tasks_path}")

        include_vars = data.get('vars') or {}
        child_inherited = self._inherit(data, inherited)

        self._include_stack.append(tasks_path)
        try:
            nodes = self._parse_nodes(self._load_tasks_file(tasks_path), tasks_path.parent,
                                      child_inherited, role, role_vars)
        finally:
            self._include_stack.pop()

        if include_vars:
            nodes = [replace(node, vars={**include_vars, **node.vars}) for node in nodes]
        return nodes

    def _parse_include_role(self, data: Dict[str, Any], inherited: Dict[str, Any]) -> List[Node]:
        """Parse include_role or import_role directive."""
        role_data = data.get('include_role') or data.get('import_role')

        if isinstance(role_data, str):
            entry: Dict[str, Any] = {'role': role_data}
        elif isinstance(role_data, dict) and role_data.get('name'):
            entry = {'role': role_data['name']}
            entry.update({k: v for k, v in role_data.items() if k != 'name'})
        else:
            raise self._error("include_role/import_role requires a role name")

        if data.get('vars'):
            entry['vars'] = {**(entry.get('vars') or {}), **data['vars']}
        return self._load_role(entry, self._inherit(data, inherited))

    def _load_role(self, role_entry: Any, inherited: Dict[str, Any]) -> List[Node]:
        """
        Expand a role into its tasks.

        Args:
            role_entry: Either a string (role name) or dict with role, vars, etc.
            inherited: Tags and conditions from the enclosing scope

        Returns:
            Nodes of the role's tasks/main.yml, after its dependencies
        """
        if isinstance(role_entry, str):
            role_name = role_entry
            params: Dict[str, Any] = {}
            entry_tags: List[str] = []
            entry_when: List[Any] = []
        elif isinstance(role_entry, dict):
            role_name = role_entry.get('role') or role_entry.get('name')
            if not role_name:
                raise self._error("Role entry must have 'role' or 'name' key")
            params = {k: v for k, v in role_entry.items()
                      if k not in ('role', 'name', 'tags', 'when', 'vars')}
            params.update(role_entry.get('vars') or {})
            entry_tags = _tags(role_entry.get('tags'))
            entry_when = _as_list(role_entry.get('when'))
        else:
            raise self._error(f"Invalid role entry type: {type(role_entry).__name__}")

        role_path = self._find_role_path(role_name)
        if not role_path:
            raise self._error(f"Role not found: {role_name}")

        # The same role with the same parameters runs once per play
        signature = f"{role_name}:{json.dumps(params, sort_keys=True, default=str)}"
        if signature in self._roles_seen:
            logger.debug("Role %s already expanded in this play", role_name)
            return []
        self._roles_seen.add(signature)

        role_inherited = {
            'tags': _merge_unique(inherited['tags'], entry_tags),
            'when': inherited['when'] + entry_when,
        }

        nodes: List[Node] = []
        meta = self._role_file(role_path, 'meta')
        if meta:
            meta_data = self.loader.load_vars_file(meta)
            for dependency in _as_list(meta_data.get('dependencies')):
                nodes.extend(self._load_role(dependency, role_inherited))

        defaults = self._role_file(role_path, 'defaults')
        if defaults:
            self._role_defaults.update(self.loader.load_vars_file(defaults))

        role_vars: Dict[str, Any] = {}
        vars_file = self._role_file(role_path, 'vars')
        if vars_file:
            role_vars.update(self.loader.load_vars_file(vars_file))
        role_vars.update(params)

        tasks_file = self._role_file(role_path, 'tasks')
        if tasks_file:
            nodes.extend(self._parse_nodes(self._load_tasks_file(tasks_file), tasks_file.parent,
                                           role_inherited, role_name, role_vars))

        handlers_file = self._role_file(role_path, 'handlers')
        if handlers_file:
            for handler_data in self._load_tasks_file(handlers_file):
                handler = self._parse_handler(handler_data, handlers_file.parent)
                self._role_handlers.append(replace(handler, role=role_name, role_vars=role_vars))

        return nodes

    def _role_file(self, role_path: Path, section: str) -> Optional[Path]:
        for name in ('main.yml', 'main.yaml'):
            path = role_path / section / name
            if path.is_file():
                return path
        return None

    def _find_role_path(self, role_name: str) -> Optional[Path]:
        """
        Find the path to a role.

        Searches in:
        1. <playbook_dir>/roles/<role_name>
        2. ./roles/<role_name>
        3. <role_name> as a path

        Returns:
            Path to role directory or None if not found
        """
        search_paths = [
            self._base_dir / "roles" / role_name,
            Path.cwd() / "roles" / role_name,
            self._base_dir / role_name,
        ]

        for path in search_paths:
            if path.is_dir():
                return path

        return None

    def _parse_handler(self, data: Any, base_dir: Path) -> Task:
        if not isinstance(data, dict):
            raise self._error("Handler entry must be a mapping")
        if any(key in data for key in ('block',) + INCLUDE_KEYS):
            raise UnsupportedFeatureError("blocks and includes in handlers")
        handler = self._parse_task(data, {'tags': [], 'when': []}, None, None)
        if not data.get('name') and not handler.listen:
            raise self._error("Handler needs a 'name' or 'listen'")
        return handler

    def _parse_task(self, data: Dict[str, Any], inherited: Dict[str, Any],
                    role: Optional[str], role_vars: Optional[Dict[str, Any]]) -> Task:
        """Parse a single task from YAML data."""
        module_name = None
        module_args: Any = None

        for key, value in data.items():
            if key in TASK_KEYWORDS:
                continue
            if key in UNSUPPORTED_KEYS:
                raise UnsupportedFeatureError(
                    f"'{key}' in tasks",
                    suggestion=f"Remove '{key}' from the task"
                )
            if key in PLAY_ONLY_KEYS:
                raise UnsupportedFeatureError(f"'{key}' in tasks",
                                              suggestion=f"Set '{key}' on the play")
            normalized = key[len(FQCN_PREFIX):] if key.startswith(FQCN_PREFIX) else key
            if normalized not in ACTIONS:
                raise UnsupportedFeatureError(
                    f"Action '{key}' is not supported",
                    suggestion=f"Supported actions: {', '.join(sorted(ACTIONS))}"
                )
            if module_name is not None:
                raise self._error(f"Task has more than one action: '{module_name}' and '{key}'")
            module_name = normalized
            module_args = value

        if module_name is None:
            raise self._error(f"Task has no action: {list(data.keys())}")

        args = self._normalize_args(module_name, module_args)
        extra_args = data.get('args') or {}
        if not isinstance(extra_args, dict):
            raise self._error("'args' must be a dictionary")
        args = {**extra_args, **args}

        loop = None
        if 'loop' in data:
            loop = data['loop']
        elif 'with_items' in data:
            loop = self._flatten_items(data['with_items'])

        loop_control = data.get('loop_control') or {}
        if not isinstance(loop_control, dict):
            raise self._error("'loop_control' must be a dictionary")

        vars_data = data.get('vars') or {}
        if not isinstance(vars_data, dict):
            raise self._error("Task 'vars' must be a dictionary")

        merged = self._inherit(data, inherited)

        return Task(
            name=str(data.get('name') or self._default_name(module_name, args)),
            module=module_name,
            args=args,
            register=data.get('register'),
            when=merged['when'],
            loop=loop,
            loop_control=dict(loop_control),
            ignore_errors=bool(data.get('ignore_errors', False)),
            ignore_unreachable=bool(data.get('ignore_unreachable', False)),
            changed_when=data.get('changed_when'),
            failed_when=data.get('failed_when'),
            until=data.get('until'),
            retries=data.get('retries'),
            delay=data.get('delay'),
            environment=data.get('environment') or {},
            tags=merged['tags'],
            notify=[str(n) for n in _as_list(data.get('notify'))],
            listen=[str(n) for n in _as_list(data.get('listen'))],
            check_mode=data.get('check_mode'),
            timeout=data.get('timeout'),
            vars=dict(vars_data),
            role=role,
            role_vars=role_vars or {},
        )

    def _default_name(self, module_name: str, args: Dict[str, Any]) -> str:
        if module_name == 'meta' and '_raw_params' in args:
            return f"meta: {args['_raw_params']}"
        return module_name

    def _flatten_items(self, items: Any) -> Any:
        """with_items flattens one level of nesting."""
        if not isinstance(items, list):
            return items
        flat: List[Any] = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            else:
                flat.append(item)
        return flat

    def _normalize_args(self, module_name: str, args: Any) -> Dict[str, Any]:
        """Normalize action arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, dict):
            return dict(args)

        if not isinstance(args, str):
            return {'_raw_params': args}

        if module_name in ('command', 'shell', 'raw'):
            # Free-form command; leading/trailing key=value options are split off
            parsed: Dict[str, Any] = {}
            words = args.split()
            remaining = []
            for word in words:
                key, sep, value = word.partition('=')
                if sep and key in COMMAND_INLINE_OPTIONS and module_name != 'raw':
                    parsed[key] = value.strip('"\'')
                else:
                    remaining.append(word)
            if len(remaining) == len(words):
                parsed['_raw_params'] = args.strip()
            else:
                parsed['_raw_params'] = ' '.join(remaining)
            return parsed

        if module_name in ('meta', 'fail') and '=' not in args:
            key = '_raw_params' if module_name == 'meta' else 'msg'
            return {key: args.strip()}

        parsed = {}
        for match in INLINE_ARG_PATTERN.finditer(args):
            key = match.group(1)
            if match.group(2) is not None:
                value = match.group(2)
            elif match.group(3) is not None:
                value = match.group(3)
            else:
                value = match.group(4)
            parsed[key] = value

        if not parsed:
            parsed['_raw_params'] = args
        return parsed
