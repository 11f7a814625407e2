# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Inventory Manager

Parses and manages inventory from YAML, INI and JSON files, directories of
such files, and host_vars/group_vars directories.

Groups live in an arena (a list indexed by integer id) with parent/child
edges stored as id lists. After loading, a topological sort over the arena
rejects cycles and yields each group's depth, which orders group variables:
parents before children, then declaration order, later entries winning.
"""

import fnmatch
import json
import logging
import random
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from stagehand.engine.config import get_config
from stagehand.engine.errors import (
    CyclicGroupError,
    DuplicateHostConflictError,
    InventoryError,
    ParseError,
)
from stagehand.engine.loader import DataLoader
from stagehand.engine.variables import merge_dicts

logger = logging.getLogger(__name__)

CONNECTION_VARS = ('stagehand_host', 'stagehand_port', 'stagehand_user', 'stagehand_connection')
HOST_ORDERS = ('inventory', 'reverse_inventory', 'sorted', 'reverse_sorted', 'shuffle')
LOCAL_NAMES = ('localhost', '127.0.0.1', '::1')
IMPLICIT_GROUPS = ('all', 'ungrouped')
VARS_EXTENSIONS = ('', '.yml', '.yaml', '.json')


class Host:
    """Represents a single host in the inventory."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = variables.copy() if variables else {}
        self._groups: List[str] = []

    @property
    def address(self) -> str:
        """Get the actual host to connect to (stagehand_host or name)."""
        return str(self.vars.get('stagehand_host', self.name))

    @property
    def port(self) -> Optional[int]:
        """Get the port number, if one is set."""
        port = self.vars.get('stagehand_port')
        return int(port) if port is not None else None

    @property
    def user(self) -> Optional[str]:
        """Get the user to connect as."""
        return self.vars.get('stagehand_user')

    @property
    def connection(self) -> str:
        """Get the connection type (ssh, winrm, local)."""
        kind = self.vars.get('stagehand_connection')
        if kind:
            return str(kind)
        return 'local' if self.name in LOCAL_NAMES else 'ssh'

    def connection_identity(self) -> Dict[str, Any]:
        """The connection settings this host was declared with."""
        return {k: self.vars[k] for k in CONNECTION_VARS if k in self.vars}

    @property
    def groups(self) -> List[str]:
        """Names of the groups this host was declared in, in declaration order."""
        return list(self._groups)

    def add_group(self, group_name: str) -> None:
        """Add this host to a group."""
        if group_name not in self._groups:
            self._groups.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        """Set a host variable."""
        self.vars[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        """Get a host variable."""
        return self.vars.get(key, default)

    def __repr__(self) -> str:
        return f"Host({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


class Group:
    """A group in the arena; edges are ids of other groups."""

    def __init__(self, group_id: int, name: str, variables: Optional[Dict[str, Any]] = None):
        self.id = group_id
        self.name = name
        self.vars: Dict[str, Any] = variables.copy() if variables else {}
        self.hosts: List[str] = []
        self.children: List[int] = []
        self.parents: List[int] = []
        self.depth = 0

    def add_host(self, host_name: str) -> None:
        """Add a host to this group."""
        if host_name not in self.hosts:
            self.hosts.append(host_name)

    def set_variable(self, key: str, value: Any) -> None:
        """Set a group variable."""
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self.hosts)})"


class InventoryManager:
    """
    Manages inventory parsing and host resolution.

    Supports:
    - YAML, INI and JSON inventory files, or a directory of them
    - host_vars/ and group_vars/ directories
    - Vault-encrypted files and inline !vault values
    - Host patterns for plays and --limit
    """

    # Pattern for host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')
    # Pattern for INI variable assignment: key=value
    VAR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

    def __init__(
        self,
        loader: Optional[DataLoader] = None,
        duplicate_host_policy: Optional[str] = None,
        hash_behaviour: Optional[str] = None,
    ):
        config = get_config()
        self.loader = loader or DataLoader()
        self.duplicate_host_policy = duplicate_host_policy or config.duplicate_host_policy
        self.hash_behaviour = hash_behaviour or config.hash_behaviour
        self.hosts: Dict[str, Host] = {}
        self._arena: List[Group] = []
        self._group_ids: Dict[str, int] = {}
        self._host_order: Dict[str, int] = {}

        for name in IMPLICIT_GROUPS:
            self.add_group(name)

    # Arena

    @property
    def groups(self) -> Dict[str, Group]:
        """Groups by name, in declaration order."""
        return {g.name: g for g in self._arena}

    def get_group(self, name: str) -> Optional[Group]:
        group_id = self._group_ids.get(name)
        return self._arena[group_id] if group_id is not None else None

    def add_group(self, name: str) -> Group:
        """Get or create a group."""
        name = name.strip()
        if not name:
            raise InventoryError("Group name cannot be empty")
        if name in self._group_ids:
            return self._arena[self._group_ids[name]]
        group = Group(len(self._arena), name)
        self._arena.append(group)
        self._group_ids[name] = group.id
        return group

    def add_child(self, parent_name: str, child_name: str) -> None:
        """Record a parent -> child edge."""
        parent = self.add_group(parent_name)
        child = self.add_group(child_name)
        if child.id not in parent.children:
            parent.children.append(child.id)
        if parent.id not in child.parents:
            child.parents.append(parent.id)

    def add_host(
        self,
        name: str,
        variables: Optional[Dict[str, Any]] = None,
        group: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Host:
        """
        Declare a host, optionally inside a group.

        A host declared again keeps its position; its variables are updated
        (last wins) unless the policy is ``error`` and the declarations give
        it different connection settings.
        """
        variables = variables or {}
        host = self.hosts.get(name)
        if host is None:
            host = Host(name, variables)
            self.hosts[name] = host
            self._host_order[name] = len(self._host_order)
        else:
            if self.duplicate_host_policy == 'error':
                first = host.connection_identity()
                second = {k: variables[k] for k in CONNECTION_VARS if k in variables}
                conflicts = {k for k in first.keys() & second.keys() if first[k] != second[k]}
                if conflicts:
                    raise DuplicateHostConflictError(name, first, second)
            else:
                logger.debug("Host '%s' declared again%s; updating variables",
                             name, f" in {source}" if source else "")
            host.vars.update(variables)

        if group:
            self.add_group(group).add_host(name)
            host.add_group(group)
        return host

    # Loading

    def parse(self, source: Union[str, Path]) -> 'InventoryManager':
        """
        Parse an inventory source.

        Args:
            source: Path to inventory file or directory

        Returns:
            self for chaining

        Raises:
            InventoryError: Missing source or invalid content
            CyclicGroupError: Group parent/child edges form a cycle
            DuplicateHostConflictError: Conflicting declarations under the
                ``error`` duplicate host policy
        """
        source_path = Path(source) if isinstance(source, str) else source

        if not source_path.exists():
            raise InventoryError(f"Inventory path does not exist: {source_path}")

        if source_path.is_file():
            inventory_dir = source_path.parent
            self._parse_file(source_path)
        elif source_path.is_dir():
            inventory_dir = source_path
            self._parse_directory(source_path)
        else:
            raise InventoryError(f"Invalid inventory source: {source_path}")

        self._load_vars_directories(inventory_dir)
        self.reconcile(str(source_path))
        logger.info("Loaded inventory %s: %d hosts, %d groups",
                    source_path, len(self.hosts), len(self._arena))
        return self

    def reconcile(self, source: Optional[str] = None) -> None:
        """Place every host in all/ungrouped, then check the group graph."""
        all_group = self._arena[self._group_ids['all']]
        ungrouped = self._arena[self._group_ids['ungrouped']]

        for host_name, host in self.hosts.items():
            all_group.add_host(host_name)
            explicit = [g for g in host.groups if g not in IMPLICIT_GROUPS]
            if explicit:
                if host_name in ungrouped.hosts:
                    ungrouped.hosts.remove(host_name)
            else:
                ungrouped.add_host(host_name)

        self._compute_depths(source)

    def _compute_depths(self, source: Optional[str] = None) -> None:
        """
        Topologically sort the arena (Kahn), raising CyclicGroupError.

        Groups without a declared parent hang off ``all``.
        """
        all_id = self._group_ids['all']
        parents: List[List[int]] = []
        for group in self._arena:
            edges = list(group.parents)
            if not edges and group.id != all_id:
                edges = [all_id]
            parents.append(edges)

        children: List[List[int]] = [[] for _ in self._arena]
        indegree = [0] * len(self._arena)
        for group_id, edges in enumerate(parents):
            for parent_id in edges:
                children[parent_id].append(group_id)
                indegree[group_id] += 1

        ready = [g for g in range(len(self._arena)) if indegree[g] == 0]
        ordered: List[int] = []
        while ready:
            current = ready.pop(0)
            ordered.append(current)
            for child_id in children[current]:
                indegree[child_id] -= 1
                if indegree[child_id] == 0:
                    ready.append(child_id)

        if len(ordered) != len(self._arena):
            remaining = {g for g in range(len(self._arena)) if indegree[g] > 0}
            raise CyclicGroupError(self._find_cycle(remaining), file_path=source)

        for group_id in ordered:
            group = self._arena[group_id]
            group.depth = 0 if group_id == all_id else max(
                self._arena[p].depth for p in parents[group_id]) + 1

    def _find_cycle(self, candidates: Set[int]) -> List[str]:
        """
        Walk parent edges inside ``candidates`` until a group repeats.

        Every group left over by the sort still has an unsorted parent, so
        the walk always closes a loop.
        """
        path: List[int] = []
        seen: Dict[int, int] = {}
        current = min(candidates)
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            current = next(p for p in self._arena[current].parents if p in candidates)
        cycle = path[seen[current]:] + [current]
        cycle.reverse()
        return [self._arena[g].name for g in cycle]

    def _parse_file(self, path: Path) -> None:
        """Parse a single inventory file."""
        content = self.loader.read_text(path)

        # Detect format by extension or content
        if path.suffix in ('.yml', '.yaml'):
            self._parse_yaml_data(self.loader.load(content, str(path)), path)
        elif path.suffix == '.json':
            try:
                data = json.loads(content)
            except ValueError as e:
                raise ParseError(f"Invalid JSON: {e}", file_path=str(path))
            self._parse_yaml_data(data, path)
        else:
            stripped = content.lstrip()
            if stripped.startswith('{'):
                self._parse_yaml_data(self.loader.load(content, str(path)), path)
            elif stripped.startswith('---') or re.match(r'^[\w.-]+:\s*$', stripped.split('\n', 1)[0]):
                self._parse_yaml_data(self.loader.load(content, str(path)), path)
            else:
                self._parse_ini_string(content, path)

    def _parse_directory(self, path: Path) -> None:
        """Parse all inventory files in a directory."""
        for item in sorted(path.iterdir()):
            if item.is_file() and not item.name.startswith('.'):
                # Skip backup files and non-inventory files
                if item.suffix not in ('.bak', '.orig', '.pyc', '.pyo', '.cfg', '.md', '.retry'):
                    self._parse_file(item)

    def _load_vars_directories(self, base_path: Path) -> None:
        """Load variables from host_vars/ and group_vars/ directories."""
        group_vars_dir = base_path / 'group_vars'
        if group_vars_dir.is_dir():
            for name, data in self._iter_vars_dir(group_vars_dir):
                group = self.add_group(name)
                group.vars.update(data)

        host_vars_dir = base_path / 'host_vars'
        if host_vars_dir.is_dir():
            for name, data in self._iter_vars_dir(host_vars_dir):
                host = self.hosts.get(name)
                if host is None:
                    logger.debug("Ignoring host_vars for unknown host '%s'", name)
                    continue
                host.vars.update(data)

    def _iter_vars_dir(self, directory: Path) -> Iterable[Tuple[str, Dict[str, Any]]]:
        for item in sorted(directory.iterdir()):
            if item.name.startswith('.'):
                continue
            if item.is_file() and item.suffix in VARS_EXTENSIONS:
                yield item.stem, self.loader.load_vars_file(item)
            elif item.is_dir():
                merged: Dict[str, Any] = {}
                for vars_file in sorted(item.iterdir()):
                    if vars_file.is_file() and vars_file.suffix in VARS_EXTENSIONS[1:]:
                        merged.update(self.loader.load_vars_file(vars_file))
                yield item.name, merged

    def _parse_ini_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children'
        source = str(source_path) if source_path else None

        for line_num, line in enumerate(content.splitlines(), 1):
            line = line.strip()

            # Skip empty lines and comments
            if not line or line.startswith('#') or line.startswith(';'):
                continue

            # Check for group header
            if line.startswith('['):
                if not line.endswith(']'):
                    raise ParseError(f"Malformed section header: {line}", file_path=source, line=line_num)
                header = line[1:-1].strip()
                group_name, _, suffix = header.partition(':')

                if suffix == 'vars':
                    current_section = 'vars'
                elif suffix == 'children':
                    current_section = 'children'
                elif suffix:
                    raise ParseError(f"Unknown section type ':{suffix}'", file_path=source, line=line_num)
                else:
                    current_section = 'hosts'
                current_group = group_name.strip()
                self.add_group(current_group)
                continue

            # Process line based on current section
            if current_section == 'vars':
                key, value = self._parse_variable_line(line)
                if not key:
                    raise ParseError(f"Expected key=value, got: {line}", file_path=source, line=line_num)
                self.add_group(current_group).set_variable(key, value)

            elif current_section == 'children':
                self.add_child(current_group, line.split()[0])

            else:
                # Parse host entry (hosts section or no section)
                for host_name, variables in self._parse_host_line(line):
                    self.add_host(host_name, variables, group=current_group, source=source)

    def _parse_host_line(self, line: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Parse a single host line, handling ranges and variables."""
        parts = line.split(None, 1)
        if not parts:
            return []

        host_pattern = parts[0]
        var_string = parts[1] if len(parts) > 1 else ''

        # Parse inline variables
        variables: Dict[str, Any] = {}
        for match in self.VAR_PATTERN.finditer(var_string):
            key = match.group(1)
            if match.group(2) is not None:
                value: Any = match.group(2)
            elif match.group(3) is not None:
                value = match.group(3)
            else:
                value = self._convert_value(match.group(4))
            variables[key] = value

        return [(name, dict(variables)) for name in self._expand_host_pattern(host_pattern)]

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        if end < start:
            raise InventoryError(f"Invalid host range in '{pattern}': end before start")
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            num_str = str(i).zfill(width)
            expanded = pattern[:match.start()] + num_str + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))

        return results

    def _parse_variable_line(self, line: str) -> Tuple[str, Any]:
        """Parse a variable assignment line."""
        if '=' not in line:
            return '', None

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        # Handle quoted values
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            return key, value[1:-1]

        return key, self._convert_value(value)

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate Python type."""
        if not isinstance(value, str):
            return value

        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False
        if value.lower() in ('null', 'none', '~'):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        if value.startswith(('[', '{')):
            try:
                return json.loads(value)
            except ValueError:
                pass

        return value

    def _parse_yaml_data(self, data: Any, source_path: Optional[Path] = None) -> None:
        """Parse YAML inventory data structure."""
        if data is None:
            return
        if not isinstance(data, dict):
            raise ParseError("Inventory must be a mapping of groups",
                             file_path=str(source_path) if source_path else None)

        for group_name, group_data in data.items():
            self._parse_yaml_group(str(group_name), group_data, source_path)

    def _parse_yaml_group(self, name: str, data: Any, source_path: Optional[Path]) -> None:
        """Parse a single group from YAML inventory."""
        source = str(source_path) if source_path else None
        group = self.add_group(name)

        if data is None:
            return
        if not isinstance(data, dict):
            raise ParseError(f"Group '{name}' must be a mapping", file_path=source)

        unknown = set(data) - {'hosts', 'vars', 'children'}
        if unknown:
            raise ParseError(
                f"Group '{name}' has unknown keys: {', '.join(sorted(map(str, unknown)))}",
                file_path=source,
            )

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, list):
            hosts_data = {h: None for h in hosts_data}
        if not isinstance(hosts_data, dict):
            raise ParseError(f"Hosts of group '{name}' must be a mapping", file_path=source)
        for host_pattern, host_vars in hosts_data.items():
            if host_vars is not None and not isinstance(host_vars, dict):
                raise ParseError(f"Variables of host '{host_pattern}' must be a mapping",
                                 file_path=source)
            for host_name in self._expand_host_pattern(str(host_pattern)):
                self.add_host(host_name, host_vars or {}, group=name, source=source)

        vars_data = data.get('vars') or {}
        if not isinstance(vars_data, dict):
            raise ParseError(f"Vars of group '{name}' must be a mapping", file_path=source)
        group.vars.update(vars_data)

        children_data = data.get('children') or {}
        if isinstance(children_data, list):
            children_data = {c: None for c in children_data}
        for child_name, child_data in children_data.items():
            self.add_child(name, str(child_name))
            self._parse_yaml_group(str(child_name), child_data, source_path)

    # Queries

    def get_host(self, name: str) -> Optional[Host]:
        return self.hosts.get(name)

    def get_host_groups(self, host: Union[Host, str]) -> List[Group]:
        """
        Every group a host belongs to, ancestors included.

        Ordered by depth (parents first), then declaration order.
        """
        host_name = host.name if isinstance(host, Host) else host
        host_obj = self.hosts.get(host_name)
        if host_obj is None:
            return []

        found: Set[int] = {self._group_ids['all']}
        stack = [self._group_ids[g] for g in host_obj.groups if g in self._group_ids]
        if host_name in self._arena[self._group_ids['ungrouped']].hosts:
            stack.append(self._group_ids['ungrouped'])
        while stack:
            group_id = stack.pop()
            if group_id in found:
                continue
            found.add(group_id)
            stack.extend(self._arena[group_id].parents)

        return sorted((self._arena[g] for g in found), key=lambda g: (g.depth, g.id))

    def get_group_vars(self, host: Union[Host, str]) -> Dict[str, Any]:
        """Effective group variables for a host."""
        merged: Dict[str, Any] = {}
        for group in self.get_host_groups(host):
            if self.hash_behaviour == 'merge':
                merged = merge_dicts(merged, group.vars, recursive=True)
            else:
                merged.update(group.vars)
        return merged

    def get_host_vars(self, host: Union[Host, str]) -> Dict[str, Any]:
        """Variables declared on the host itself."""
        host_name = host.name if isinstance(host, Host) else host
        host_obj = self.hosts.get(host_name)
        return dict(host_obj.vars) if host_obj else {}

    def get_vars(self, host: Union[Host, str]) -> Dict[str, Any]:
        """Group variables overlaid with host variables."""
        group_vars = self.get_group_vars(host)
        host_vars = self.get_host_vars(host)
        if self.hash_behaviour == 'merge':
            return merge_dicts(group_vars, host_vars, recursive=True)
        group_vars.update(host_vars)
        return group_vars

    def get_group_hosts(self, group_name: str) -> List[str]:
        """Names of hosts in a group or any of its descendants, in inventory order."""
        group = self.get_group(group_name)
        if group is None:
            return []
        if group.name == 'all':
            return list(self.hosts)

        names: Set[str] = set()
        seen: Set[int] = set()
        stack = [group.id]
        while stack:
            group_id = stack.pop()
            if group_id in seen:
                continue
            seen.add(group_id)
            names.update(self._arena[group_id].hosts)
            stack.extend(self._arena[group_id].children)
        return self._in_inventory_order(names)

    def groups_dict(self) -> Dict[str, List[str]]:
        """Group name -> host names, for the ``groups`` variable."""
        return {g.name: self.get_group_hosts(g.name) for g in self._arena}

    def get_hosts(self, pattern: str = "all", order: str = "inventory",
                  seed: Optional[int] = None) -> List[Host]:
        """
        Get hosts matching a pattern.

        Supported patterns:
        - "all" or "*" - all hosts
        - "group_name" - all hosts in a group (including children)
        - "host_name" - single host
        - "web*" - shell wildcard over host and group names
        - "~web\\d+" - regular expression over host and group names
        - "a:b" or "a,b" - union
        - "a:!b" - difference
        - "a:&b" - intersection

        Unions are applied first, then intersections, then exclusions.
        Unknown names match nothing.

        Args:
            pattern: Host pattern string
            order: inventory, reverse_inventory, sorted, reverse_sorted or shuffle
            seed: Random seed for ``shuffle``

        Returns:
            De-duplicated list of matching Host objects
        """
        if order not in HOST_ORDERS:
            raise InventoryError(f"Unknown host order '{order}', expected one of {HOST_ORDERS}")

        terms = split_pattern(pattern or 'all')
        positive = [t for t in terms if not t.startswith(('!', '&'))]
        intersections = [t[1:] for t in terms if t.startswith('&')]
        exclusions = [t[1:] for t in terms if t.startswith('!')]

        if not positive and (intersections or exclusions):
            positive = ['all']

        selected: Set[str] = set()
        for term in positive:
            selected.update(self._match_term(term))
        for term in intersections:
            selected &= self._match_term(term)
        for term in exclusions:
            selected -= self._match_term(term)

        names = self._in_inventory_order(selected)
        if order == 'reverse_inventory':
            names.reverse()
        elif order == 'sorted':
            names.sort()
        elif order == 'reverse_sorted':
            names.sort(reverse=True)
        elif order == 'shuffle':
            random.Random(seed).shuffle(names)
        return [self.hosts[name] for name in names]

    def _match_term(self, term: str) -> Set[str]:
        term = term.strip()
        if not term:
            return set()
        if term in ('all', '*'):
            return set(self.hosts)

        if term.startswith('~'):
            try:
                regex = re.compile(term[1:])
            except re.error as e:
                raise InventoryError(f"Invalid host pattern regex '{term}': {e}")
            return self._match_names(lambda name: regex.match(name) is not None)

        if self.get_group(term) is not None:
            return set(self.get_group_hosts(term))
        if term in self.hosts:
            return {term}

        if any(c in term for c in '*?['):
            return self._match_names(lambda name: fnmatch.fnmatchcase(name, term))

        logger.debug("Host pattern '%s' matched nothing", term)
        return set()

    def _match_names(self, predicate) -> Set[str]:
        names = {h for h in self.hosts if predicate(h)}
        for group in self._arena:
            if predicate(group.name):
                names.update(self.get_group_hosts(group.name))
        return names

    def _in_inventory_order(self, names: Iterable[str]) -> List[str]:
        return sorted((n for n in names if n in self._host_order), key=self._host_order.__getitem__)

    # Output for the inventory command

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready listing of groups and per-host variables."""
        data: Dict[str, Any] = {'_meta': {'hostvars': {
            name: self.get_vars(name) for name in self.hosts
        }}}
        for group in self._arena:
            entry: Dict[str, Any] = {}
            if group.hosts and group.name != 'all':
                entry['hosts'] = list(group.hosts)
            children = [self._arena[c].name for c in group.children]
            if group.name == 'all':
                children = [g.name for g in self._arena
                            if g.name != 'all' and (not g.parents or self._group_ids['all'] in g.parents)]
            if children:
                entry['children'] = children
            if group.vars:
                entry['vars'] = dict(group.vars)
            data[group.name] = entry
        return data

    def graph(self, root: str = 'all') -> str:
        """Text tree of groups and hosts below ``root``."""
        group = self.get_group(root)
        if group is None:
            raise InventoryError(f"Unknown group: {root}")
        lines: List[str] = []
        self._graph_lines(group, 0, lines)
        return '\n'.join(lines)

    def _graph_lines(self, group: Group, indent: int, lines: List[str]) -> None:
        pad = '  |' * indent
        lines.append(f"{pad}@{group.name}:")
        if group.name == 'all':
            children = [g for g in self._arena if g.name != 'all'
                        and (not g.parents or group.id in g.parents)
                        and (g.name != 'ungrouped' or g.hosts)]
        else:
            children = [self._arena[c] for c in group.children]
        for child in children:
            self._graph_lines(child, indent + 1, lines)
        for host_name in group.hosts if group.name != 'all' else []:
            lines.append(f"{'  |' * (indent + 1)}--{host_name}")


def split_pattern(pattern: str) -> List[str]:
    """Split a host pattern on ',' and ':' (regex terms keep their colons)."""
    terms: List[str] = []
    for piece in pattern.split(','):
        piece = piece.strip()
        if not piece:
            continue
        if piece.startswith('~'):
            terms.append(piece)
            continue
        terms.extend(t.strip() for t in piece.split(':') if t.strip())
    return terms
