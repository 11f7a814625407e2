"""
Tests for inventory parsing, group graph and host patterns.
"""

import pytest
from pathlib import Path

from stagehand.engine.errors import CyclicGroupError, DuplicateHostConflictError, InventoryError, ParseError
from stagehand.engine.inventory import Host, InventoryManager


def parse(tmp_path: Path, content: str, name: str = "inventory.yml") -> InventoryManager:
    inventory_file = tmp_path / name
    inventory_file.write_text(content)
    return InventoryManager().parse(str(inventory_file))


def names(hosts):
    return [h.name for h in hosts]


PATTERN_INVENTORY = """
webservers:
  hosts:
    web1:
    web2:
    web3:
dbservers:
  hosts:
    db1:
    db2:
staging:
  hosts:
    web3:
    db2:
"""


class TestYAMLInventory:
    """Tests for YAML inventory files."""

    def test_hosts_and_vars(self, tmp_path: Path):
        """Hosts, host vars and group vars are loaded."""
        mgr = parse(tmp_path, """
webservers:
  hosts:
    web1:
      stagehand_host: 10.0.0.1
      http_port: 8080
    web2:
  vars:
    http_port: 80
""")

        assert names(mgr.get_hosts("webservers")) == ["web1", "web2"]
        assert mgr.get_host("web1").address == "10.0.0.1"
        assert mgr.get_vars("web1")["http_port"] == 8080
        assert mgr.get_vars("web2")["http_port"] == 80

    def test_host_ranges(self, tmp_path: Path):
        """Ranges expand with zero padding."""
        mgr = parse(tmp_path, """
web:
  hosts:
    web[01:03].example.com:
""")

        assert names(mgr.get_hosts("web")) == [
            "web01.example.com", "web02.example.com", "web03.example.com"]

    def test_children_order_group_vars_by_depth(self, tmp_path: Path):
        """Deeper groups override their ancestors, the host overrides all groups."""
        mgr = parse(tmp_path, """
all:
  vars:
    level: all
    base: true
  children:
    web:
      vars:
        level: web
      hosts:
        web1:
          level: host
      children:
        web_east:
          vars:
            level: east
          hosts:
            web2:
""")

        assert mgr.get_vars("web2")["level"] == "east"
        assert mgr.get_vars("web2")["base"] is True
        assert mgr.get_vars("web1")["level"] == "host"
        assert names(mgr.get_hosts("web")) == ["web1", "web2"]
        assert [g.name for g in mgr.get_host_groups("web2")] == ["all", "web", "web_east"]

    def test_same_depth_later_group_wins(self, tmp_path: Path):
        """Between groups of equal depth the later declaration wins."""
        mgr = parse(tmp_path, """
first:
  hosts:
    web1:
  vars:
    color: red
second:
  hosts:
    web1:
  vars:
    color: blue
""")

        assert mgr.get_vars("web1")["color"] == "blue"

    def test_ungrouped_hosts(self, tmp_path: Path):
        """Hosts declared directly under all are ungrouped."""
        mgr = parse(tmp_path, """
all:
  hosts:
    loner:
  children:
    web:
      hosts:
        web1:
""")

        assert names(mgr.get_hosts("ungrouped")) == ["loner"]
        assert names(mgr.get_hosts("all")) == ["loner", "web1"]

    def test_unknown_group_key(self, tmp_path: Path):
        """Unexpected group keys are a parse error."""
        with pytest.raises(ParseError, match="unknown keys: host"):
            parse(tmp_path, """
web:
  host:
    web1:
""")

    def test_cyclic_groups(self, tmp_path: Path):
        """A group that is its own ancestor is rejected."""
        with pytest.raises(CyclicGroupError) as excinfo:
            parse(tmp_path, """
a:
  children:
    b:
      children:
        a:
""")

        assert set(excinfo.value.cycle) == {"a", "b"}
        assert "cycle" in str(excinfo.value)

    def test_missing_source(self, tmp_path: Path):
        """A missing inventory path is an inventory error."""
        with pytest.raises(InventoryError, match="does not exist"):
            InventoryManager().parse(tmp_path / "nope.yml")


class TestINIInventory:
    """Tests for INI inventory files."""

    def test_groups_children_and_vars(self, tmp_path: Path):
        """Sections, children, group vars and inline host vars."""
        mgr = parse(tmp_path, """
# comment
[web]
web[01:02].example.com http_port=80

[db]
db1 stagehand_host=10.0.0.5 stagehand_port=2222 stagehand_user='deploy user'

[prod:children]
web
db

[prod:vars]
env=production
debug=false
""", name="hosts.ini")

        assert names(mgr.get_hosts("prod")) == ["web01.example.com", "web02.example.com", "db1"]
        assert mgr.get_vars("web02.example.com")["http_port"] == 80
        assert mgr.get_vars("db1")["env"] == "production"
        assert mgr.get_vars("db1")["debug"] is False

        db1 = mgr.get_host("db1")
        assert db1.address == "10.0.0.5"
        assert db1.port == 2222
        assert db1.user == "deploy user"

    def test_malformed_header(self, tmp_path: Path):
        """A section header without a closing bracket reports its line."""
        with pytest.raises(ParseError) as excinfo:
            parse(tmp_path, "web1\n[web\n", name="hosts")

        assert excinfo.value.line == 2

    def test_unknown_section_suffix(self, tmp_path: Path):
        with pytest.raises(ParseError, match="Unknown section type"):
            parse(tmp_path, "[web:hosts]\nweb1\n", name="hosts")


class TestVarsDirectories:
    """Tests for host_vars/ and group_vars/."""

    def test_host_and_group_vars(self, tmp_path: Path):
        """Files and per-group directories are merged in."""
        (tmp_path / "group_vars" / "all").mkdir(parents=True)
        (tmp_path / "group_vars" / "all" / "01-main.yml").write_text("ntp: pool.ntp.org\n")
        (tmp_path / "group_vars" / "all" / "02-extra.yml").write_text("timezone: UTC\n")
        (tmp_path / "group_vars" / "webservers.yml").write_text("http_port: 80\n")
        (tmp_path / "host_vars").mkdir()
        (tmp_path / "host_vars" / "web1.yml").write_text("http_port: 8080\n")
        (tmp_path / "host_vars" / "ghost.yml").write_text("unused: true\n")

        mgr = parse(tmp_path, "webservers:\n  hosts:\n    web1:\n    web2:\n")

        assert mgr.get_vars("web1") == {"ntp": "pool.ntp.org", "timezone": "UTC", "http_port": 8080}
        assert mgr.get_vars("web2")["http_port"] == 80
        assert mgr.get_host("ghost") is None

    def test_directory_inventory(self, tmp_path: Path):
        """Every inventory file in a directory is parsed."""
        inventory_dir = tmp_path / "inventory"
        inventory_dir.mkdir()
        (inventory_dir / "01-web.yml").write_text("web:\n  hosts:\n    web1:\n")
        (inventory_dir / "02-db.ini").write_text("[db]\ndb1\n")
        (inventory_dir / "README.md").write_text("# not inventory\n")

        mgr = InventoryManager().parse(inventory_dir)

        assert names(mgr.get_hosts("all")) == ["web1", "db1"]


class TestHostPatterns:
    """Tests for get_hosts pattern matching and ordering."""

    @pytest.fixture
    def mgr(self, tmp_path: Path) -> InventoryManager:
        return parse(tmp_path, PATTERN_INVENTORY)

    @pytest.mark.parametrize("pattern,expected", [
        ("all", ["web1", "web2", "web3", "db1", "db2"]),
        ("*", ["web1", "web2", "web3", "db1", "db2"]),
        ("webservers:dbservers", ["web1", "web2", "web3", "db1", "db2"]),
        ("web1,db2", ["web1", "db2"]),
        ("webservers:!staging", ["web1", "web2"]),
        ("webservers:&staging", ["web3"]),
        ("!staging", ["web1", "web2", "db1"]),
        ("web*", ["web1", "web2", "web3"]),
        ("~db\\d", ["db1", "db2"]),
        ("nothing_here", []),
    ])
    def test_patterns(self, mgr: InventoryManager, pattern, expected):
        assert names(mgr.get_hosts(pattern)) == expected

    def test_orders(self, mgr: InventoryManager):
        """Host order options."""
        assert names(mgr.get_hosts("webservers", order="reverse_inventory")) == ["web3", "web2", "web1"]
        assert names(mgr.get_hosts("all", order="sorted")) == ["db1", "db2", "web1", "web2", "web3"]
        assert names(mgr.get_hosts("all", order="reverse_sorted"))[0] == "web3"

        shuffled = names(mgr.get_hosts("all", order="shuffle", seed=7))
        assert shuffled == names(mgr.get_hosts("all", order="shuffle", seed=7))
        assert sorted(shuffled) == ["db1", "db2", "web1", "web2", "web3"]

    def test_unknown_order(self, mgr: InventoryManager):
        with pytest.raises(InventoryError, match="Unknown host order"):
            mgr.get_hosts("all", order="random")

    def test_invalid_regex(self, mgr: InventoryManager):
        with pytest.raises(InventoryError, match="Invalid host pattern regex"):
            mgr.get_hosts("~web[")


class TestDuplicateHosts:
    """Tests for hosts declared more than once."""

    def test_last_wins_by_default(self):
        mgr = InventoryManager()
        mgr.add_host("web1", {"stagehand_host": "10.0.0.1", "role": "a"}, group="web")
        mgr.add_host("web1", {"stagehand_host": "10.0.0.2"}, group="app")
        mgr.reconcile()

        host = mgr.get_host("web1")
        assert host.address == "10.0.0.2"
        assert host.vars["role"] == "a"
        assert host.groups == ["web", "app"]
        assert names(mgr.get_hosts("all")) == ["web1"]

    def test_error_policy_rejects_conflict(self):
        """Different connection settings for the same name are an error."""
        mgr = InventoryManager(duplicate_host_policy="error")
        mgr.add_host("web1", {"stagehand_host": "10.0.0.1"})

        with pytest.raises(DuplicateHostConflictError, match="web1"):
            mgr.add_host("web1", {"stagehand_host": "10.0.0.2"})

    def test_error_policy_allows_compatible(self):
        """Re-declaring without conflicting connection settings is fine."""
        mgr = InventoryManager(duplicate_host_policy="error")
        mgr.add_host("web1", {"stagehand_host": "10.0.0.1"}, group="web")
        mgr.add_host("web1", {"http_port": 80}, group="app")

        assert mgr.get_host("web1").vars == {"stagehand_host": "10.0.0.1", "http_port": 80}


class TestInventoryOutput:
    """Tests for to_dict and graph."""

    def test_to_dict(self, tmp_path: Path):
        mgr = parse(tmp_path, """
prod:
  vars:
    env: production
  children:
    webservers:
      hosts:
        web1:
          http_port: 80
""")

        data = mgr.to_dict()

        assert data["_meta"]["hostvars"]["web1"] == {"env": "production", "http_port": 80}
        assert data["prod"] == {"children": ["webservers"], "vars": {"env": "production"}}
        assert data["webservers"] == {"hosts": ["web1"]}
        assert "prod" in data["all"]["children"]
        assert "webservers" not in data["all"]["children"]

    def test_graph(self, tmp_path: Path):
        mgr = parse(tmp_path, """
prod:
  children:
    webservers:
      hosts:
        web1:
""")

        assert mgr.graph().splitlines() == [
            "@all:",
            "  |@prod:",
            "  |  |@webservers:",
            "  |  |  |--web1",
        ]
        assert mgr.graph("webservers").splitlines() == ["@webservers:", "  |--web1"]

    def test_graph_unknown_group(self, tmp_path: Path):
        mgr = parse(tmp_path, "web:\n  hosts:\n    web1:\n")

        with pytest.raises(InventoryError, match="Unknown group"):
            mgr.graph("nope")


class TestHost:
    """Tests for Host connection properties."""

    def test_local_names_use_local_connection(self):
        assert Host("localhost").connection == "local"
        assert Host("127.0.0.1").connection == "local"
        assert Host("web1").connection == "ssh"

    def test_explicit_connection(self):
        host = Host("win1", {"stagehand_connection": "winrm", "stagehand_port": "5986"})

        assert host.connection == "winrm"
        assert host.port == 5986
        assert host.address == "win1"
        assert host.connection_identity() == {"stagehand_connection": "winrm", "stagehand_port": "5986"}
