# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Variable Store

Variables live in a fixed stack of named layers, lowest precedence first:

    role defaults, inventory group, inventory host, play, role vars,
    block, task, registered/facts, extra

``ScopeStack.resolve`` scans from the top and returns the first layer that
defines a name, so extra vars are never shadowed. Mappings defined in
several layers replace each other unless ``hash_behaviour`` is ``merge``,
in which case they are deep merged; lists are never concatenated unless
``combine`` is asked to.
"""

from __future__ import annotations

import copy
import enum
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, TYPE_CHECKING

from stagehand.engine.config import get_config

if TYPE_CHECKING:
    from stagehand.engine.inventory import Host, InventoryManager

logger = logging.getLogger(__name__)


class _Undefined:
    """Sentinel for a name no layer defines. Distinct from None and falsey values."""

    _instance: Optional['_Undefined'] = None

    def __new__(cls) -> '_Undefined':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return 'UNDEFINED'


UNDEFINED = _Undefined()


class Layer(enum.IntEnum):
    """Variable layers, in increasing precedence."""

    ROLE_DEFAULTS = 0
    INVENTORY_GROUP = 1
    INVENTORY_HOST = 2
    PLAY = 3
    ROLE_VARS = 4
    BLOCK = 5
    TASK = 6
    FACTS = 7
    EXTRA = 8


LIST_MERGE_MODES = ('replace', 'keep', 'append', 'prepend', 'append_rp', 'prepend_rp')


def merge_dicts(base: Dict[str, Any], override: Dict[str, Any], recursive: bool = True,
                list_merge: str = 'replace') -> Dict[str, Any]:
    """
    Merge ``override`` into a copy of ``base``.

    Args:
        base: Lower precedence mapping
        override: Higher precedence mapping
        recursive: Merge nested mappings instead of replacing them
        list_merge: How lists present on both sides combine

    Returns:
        New merged mapping; inputs are not modified
    """
    if list_merge not in LIST_MERGE_MODES:
        raise ValueError(f"list_merge must be one of {LIST_MERGE_MODES}, got '{list_merge}'")

    result = dict(base)
    for key, value in override.items():
        existing = result.get(key, UNDEFINED)
        if recursive and isinstance(existing, dict) and isinstance(value, dict):
            result[key] = merge_dicts(existing, value, recursive, list_merge)
        elif isinstance(existing, list) and isinstance(value, list):
            result[key] = _merge_lists(existing, value, list_merge)
        else:
            result[key] = value
    return result


def _merge_lists(base: List[Any], override: List[Any], mode: str) -> List[Any]:
    if mode == 'replace':
        return list(override)
    if mode == 'keep':
        return list(base)
    if mode == 'append':
        return base + override
    if mode == 'prepend':
        return override + base
    if mode == 'append_rp':
        # Remove from base what override repeats, then append
        return [x for x in base if x not in override] + override
    # prepend_rp
    return override + [x for x in base if x not in override]


def combine(*terms: Any, recursive: bool = False, list_merge: str = 'replace') -> Dict[str, Any]:
    """Explicit mapping merge, also exposed as the ``combine`` template filter."""
    result: Dict[str, Any] = {}
    for term in terms:
        items = term if isinstance(term, (list, tuple)) else [term]
        for item in items:
            if not isinstance(item, dict):
                raise TypeError(f"combine expects mappings, got {type(item).__name__}")
            result = merge_dicts(result, item, recursive=recursive, list_merge=list_merge)
    return result


class ScopeStack(Mapping):
    """
    Fixed array of variable layers.

    Instances are cheap to derive: ``with_layer`` copies the list of layer
    references and replaces one layer, so sibling tasks never see each
    other's task or block variables. The facts layer dict is shared by
    reference between a host's stacks so registered results stay visible
    to later tasks.
    """

    def __init__(
        self,
        layers: Optional[Sequence[Dict[str, Any]]] = None,
        hash_behaviour: Optional[str] = None,
    ):
        if layers is None:
            self._layers: List[Dict[str, Any]] = [{} for _ in Layer]
        else:
            if len(layers) != len(Layer):
                raise ValueError(f"ScopeStack needs {len(Layer)} layers, got {len(layers)}")
            self._layers = list(layers)
        self.hash_behaviour = hash_behaviour or get_config().hash_behaviour

    def layer(self, layer: Layer) -> Dict[str, Any]:
        return self._layers[layer]

    def with_layer(self, layer: Layer, values: Optional[Dict[str, Any]]) -> 'ScopeStack':
        """
        Derive a stack with ``values`` added on top of one layer.

        The receiver is left untouched.
        """
        if not values:
            return self
        layers = list(self._layers)
        layers[layer] = {**layers[layer], **values}
        return ScopeStack(layers, self.hash_behaviour)

    def replace_layer(self, layer: Layer, values: Dict[str, Any]) -> 'ScopeStack':
        """Derive a stack whose ``layer`` is exactly ``values`` (shared by reference)."""
        layers = list(self._layers)
        layers[layer] = values
        return ScopeStack(layers, self.hash_behaviour)

    def set(self, layer: Layer, name: str, value: Any) -> None:
        """Set a name in a layer in place."""
        self._layers[layer][name] = value

    def resolve(self, name: str) -> Any:
        """
        Value of ``name`` from the highest layer defining it, or UNDEFINED.

        With ``hash_behaviour == 'merge'`` a mapping is deep merged with the
        mappings lower layers give the same name, down to the first layer
        where the name is not a mapping.
        """
        for index in range(len(self._layers) - 1, -1, -1):
            layer = self._layers[index]
            if name not in layer:
                continue
            value = layer[name]
            if self.hash_behaviour == 'merge' and isinstance(value, dict):
                return self._merged(name, index)
            return value
        return UNDEFINED

    def _merged(self, name: str, top: int) -> Dict[str, Any]:
        stack: List[Dict[str, Any]] = []
        for index in range(top, -1, -1):
            layer = self._layers[index]
            if name not in layer:
                continue
            value = layer[name]
            if not isinstance(value, dict):
                break
            stack.append(value)
        result: Dict[str, Any] = {}
        for value in reversed(stack):
            result = merge_dicts(result, value, recursive=True)
        return result

    def defining_layer(self, name: str) -> Optional[Layer]:
        """Highest layer that defines ``name``."""
        for index in range(len(self._layers) - 1, -1, -1):
            if name in self._layers[index]:
                return Layer(index)
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Flatten every visible name into one dict."""
        return {name: self.resolve(name) for name in self}

    # Mapping protocol, so the stack can be handed to Jinja2 directly

    def __getitem__(self, name: str) -> Any:
        value = self.resolve(name)
        if value is UNDEFINED:
            raise KeyError(name)
        return value

    def __contains__(self, name: object) -> bool:
        return any(name in layer for layer in self._layers)

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for layer in self._layers:
            for name in layer:
                if name not in seen:
                    seen.add(name)
                    yield name

    def __len__(self) -> int:
        return len(set().union(*self._layers))

    def __repr__(self) -> str:
        sizes = ', '.join(f"{layer.name.lower()}={len(self._layers[layer])}" for layer in Layer)
        return f"ScopeStack({sizes})"


class FactCache(ABC):
    """Durable per-host facts shared between plays."""

    @abstractmethod
    def get(self, host: str) -> Dict[str, Any]:
        """Facts cached for ``host`` (a copy)."""

    @abstractmethod
    def update(self, host: str, facts: Dict[str, Any]) -> None:
        """Add or overwrite facts for ``host``."""

    @abstractmethod
    def clear(self, host: Optional[str] = None) -> None:
        """Forget one host's facts, or every host's."""


class MemoryFactCache(FactCache):
    """Fact cache for the lifetime of the process."""

    def __init__(self) -> None:
        self._facts: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, host: str) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._facts.get(host, {}))

    def update(self, host: str, facts: Dict[str, Any]) -> None:
        with self._lock:
            self._facts.setdefault(host, {}).update(copy.deepcopy(facts))

    def clear(self, host: Optional[str] = None) -> None:
        with self._lock:
            if host is None:
                self._facts.clear()
            else:
                self._facts.pop(host, None)


class JsonFileFactCache(FactCache):
    """Fact cache persisted as one JSON file per host in a directory."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, host: str) -> Path:
        return self.directory / f"{host}.json"

    def _read(self, host: str) -> Dict[str, Any]:
        path = self._path(host)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable fact cache file %s: %s", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, host: str) -> Dict[str, Any]:
        with self._lock:
            return self._read(host)

    def update(self, host: str, facts: Dict[str, Any]) -> None:
        with self._lock:
            data = self._read(host)
            data.update(facts)
            fd, tmp = tempfile.mkstemp(dir=str(self.directory), suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                    json.dump(data, fh, indent=2, sort_keys=True, default=str)
                os.replace(tmp, self._path(host))
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

    def clear(self, host: Optional[str] = None) -> None:
        with self._lock:
            paths = [self._path(host)] if host else list(self.directory.glob('*.json'))
            for path in paths:
                if path.exists():
                    path.unlink()


def create_fact_cache(plugin: Optional[str] = None, connection: Optional[str] = None) -> FactCache:
    """Build the fact cache named by config (``memory`` or ``jsonfile``)."""
    config = get_config()
    plugin = plugin or config.fact_caching
    if plugin == 'memory':
        return MemoryFactCache()
    if plugin == 'jsonfile':
        directory = connection or config.fact_caching_connection
        if not directory:
            raise ValueError("fact_caching=jsonfile requires fact_caching_connection")
        return JsonFileFactCache(directory)
    raise ValueError(f"Unknown fact cache plugin: {plugin}")


class HostVars(Mapping):
    """
    Lazy ``hostvars`` mapping: host name to that host's variables.

    Each lookup flattens the host's inventory, facts and extra layers, so
    facts another host registered earlier in the play are visible.
    """

    def __init__(self, manager: 'VariableManager'):
        self._manager = manager

    def __getitem__(self, name: str) -> Dict[str, Any]:
        host = self._manager.inventory.get_host(name)
        if host is None:
            raise KeyError(name)
        return self._manager.host_stack(host, facts=self._manager.live_facts(name)).to_dict()

    def __iter__(self) -> Iterator[str]:
        return iter(self._manager.inventory.hosts)

    def __len__(self) -> int:
        return len(self._manager.inventory.hosts)

    def __repr__(self) -> str:
        return f"HostVars({len(self)} hosts)"


class VariableManager:
    """
    Builds the scope stack a host starts a play with.

    Args:
        inventory: Inventory the hosts come from
        extra_vars: Highest precedence variables (``--extra-vars``)
        fact_cache: Durable fact cache seeding each play's facts layer
        hash_behaviour: Overrides the configured hash_behaviour
    """

    def __init__(
        self,
        inventory: 'InventoryManager',
        extra_vars: Optional[Dict[str, Any]] = None,
        fact_cache: Optional[FactCache] = None,
        hash_behaviour: Optional[str] = None,
    ):
        self.inventory = inventory
        self.extra_vars = dict(extra_vars or {})
        self.fact_cache = fact_cache or MemoryFactCache()
        self.hash_behaviour = hash_behaviour or get_config().hash_behaviour
        self.hostvars = HostVars(self)
        self._live_facts: Dict[str, Dict[str, Any]] = {}

    def live_facts(self, host: str) -> Dict[str, Any]:
        """Facts layer of the host's current play, else its cached facts."""
        if host in self._live_facts:
            return self._live_facts[host]
        return self.fact_cache.get(host)

    def magic_vars(self, host: 'Host', play_hosts: Sequence[str] = (),
                   check_mode: bool = False) -> Dict[str, Any]:
        return {
            'inventory_hostname': host.name,
            'inventory_hostname_short': host.name.split('.')[0],
            'group_names': sorted(g.name for g in self.inventory.get_host_groups(host)
                                  if g.name not in ('all', 'ungrouped')),
            'groups': self.inventory.groups_dict(),
            'play_hosts': list(play_hosts),
            'stagehand_check_mode': check_mode,
            'hostvars': self.hostvars,
        }

    def host_stack(
        self,
        host: 'Host',
        play_vars: Optional[Dict[str, Any]] = None,
        role_defaults: Optional[Dict[str, Any]] = None,
        facts: Optional[Dict[str, Any]] = None,
        play_hosts: Sequence[str] = (),
        check_mode: bool = False,
    ) -> ScopeStack:
        """
        Scope stack for ``host`` at the start of a play.

        ``facts`` becomes the facts layer by reference; when omitted a new
        dict is seeded from the fact cache.
        """
        if facts is None:
            facts = self.fact_cache.get(host.name)
            self._live_facts[host.name] = facts

        layers: List[Dict[str, Any]] = [{} for _ in Layer]
        layers[Layer.ROLE_DEFAULTS] = dict(role_defaults or {})
        layers[Layer.INVENTORY_GROUP] = self.inventory.get_group_vars(host)
        host_layer = self.magic_vars(host, play_hosts, check_mode)
        host_layer.update(self.inventory.get_host_vars(host))
        layers[Layer.INVENTORY_HOST] = host_layer
        layers[Layer.PLAY] = dict(play_vars or {})
        layers[Layer.FACTS] = facts
        layers[Layer.EXTRA] = self.extra_vars
        return ScopeStack(layers, self.hash_behaviour)

    def register(self, stack: ScopeStack, name: str, result: Any) -> None:
        """Store a registered result in the facts layer."""
        stack.set(Layer.FACTS, name, result)

    def set_facts(self, host: str, stack: ScopeStack, facts: Dict[str, Any],
                  cacheable: bool = False) -> None:
        """Store plain facts; ``cacheable`` facts also go to the fact cache."""
        for name, value in facts.items():
            stack.set(Layer.FACTS, name, value)
        if cacheable:
            self.fact_cache.update(host, facts)
