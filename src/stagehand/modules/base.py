# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Module Base

Base class and registry for all built-in actions.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from stagehand.connections.base import Connection
from stagehand.engine.errors import UnreachableError
from stagehand.engine.inventory import Host
from stagehand.engine.playbook import FQCN_PREFIX
from stagehand.engine.results import TaskResult, TaskStatus


@dataclass
class ModuleResult:
    """Result of module execution."""

    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    failed: bool = False
    skipped: bool = False
    results: Dict[str, Any] = field(default_factory=dict)
    # Facts to store on the host (set_fact)
    facts: Dict[str, Any] = field(default_factory=dict)
    cacheable: bool = False

    def to_task_result(self, host: str, task_name: str) -> TaskResult:
        """Convert to TaskResult."""
        if self.skipped:
            status = TaskStatus.SKIPPED
        elif self.failed:
            status = TaskStatus.FAILED
        elif self.changed:
            status = TaskStatus.CHANGED
        else:
            status = TaskStatus.OK

        return TaskResult(
            host=host,
            task_name=task_name,
            status=status,
            changed=self.changed,
            rc=self.rc,
            stdout=self.stdout,
            stderr=self.stderr,
            msg=self.msg,
            results=dict(self.results),
        )


@dataclass
class ModuleContext:
    """
    What an action may use while it runs on one host.

    The connection is opened on first use through ``connector``, so actions
    that never touch the host never connect.
    """

    host: Host
    variables: Mapping
    check_mode: bool = False
    timeout: Optional[float] = None
    environment: Dict[str, str] = field(default_factory=dict)
    base_dir: Optional[Path] = None
    verbosity: int = 0
    connector: Optional[Callable[[], Awaitable[Connection]]] = None

    async def get_connection(self) -> Connection:
        if self.connector is None:
            raise UnreachableError(self.host.name, "No connection available")
        return await self.connector()


class Module(ABC):
    """
    Base class for all actions.

    ``needs_connection`` actions talk to the host; ``mutating`` actions
    change it and so never run their ``run()`` path in check mode.
    """

    # Module name (used for registration)
    name: str = ""

    # Required arguments
    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    needs_connection: bool = False
    mutating: bool = False

    def __init__(self, args: Dict[str, Any], context: ModuleContext):
        self.args = args
        self.context = context

    @property
    def check_mode(self) -> bool:
        return self.context.check_mode

    async def get_connection(self) -> Connection:
        return await self.context.get_connection()

    def validate_args(self) -> Optional[str]:
        """
        Validate module arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if required not in self.args:
                return f"Missing required argument: {required}"
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        """Get an argument value with optional default."""
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    @abstractmethod
    async def run(self) -> ModuleResult:
        """
        Execute the module.

        Returns:
            ModuleResult with execution outcome
        """

    async def check(self) -> ModuleResult:
        """
        Side-effect free variant of ``run()`` used in check mode.

        Inspection actions simply run; mutating actions that cannot predict
        their outcome report skipped.
        """
        if not self.mutating:
            return await self.run()
        return ModuleResult(skipped=True, msg="Skipped in check mode")


# Module registry
_modules: Dict[str, Type[Module]] = {}
_modules_imported = False


def register_module(cls: Type[Module]) -> Type[Module]:
    """Decorator to register a module class."""
    _modules[cls.name] = cls
    return cls


def get_module(name: str) -> Optional[Type[Module]]:
    """Get a module class by name or by its ``stagehand.builtin.`` alias."""
    _ensure_modules_imported()
    if name.startswith(FQCN_PREFIX):
        name = name[len(FQCN_PREFIX):]
    return _modules.get(name)


def list_modules() -> List[str]:
    """List all registered module names."""
    _ensure_modules_imported()
    return sorted(_modules.keys())


def _ensure_modules_imported() -> None:
    """Ensure all modules have been imported."""
    global _modules_imported
    if not _modules_imported:
        _import_builtin_modules()
        _modules_imported = True


def _import_builtin_modules() -> None:
    """Import all built-in modules to register them."""
    # These imports trigger the @register_module decorators
    from stagehand.modules import builtin_command  # noqa: F401
    from stagehand.modules import builtin_shell  # noqa: F401
    from stagehand.modules import builtin_raw  # noqa: F401
    from stagehand.modules import builtin_ping  # noqa: F401
    from stagehand.modules import builtin_debug  # noqa: F401
    from stagehand.modules import builtin_set_fact  # noqa: F401
    from stagehand.modules import builtin_fail  # noqa: F401
    from stagehand.modules import builtin_assert  # noqa: F401
    from stagehand.modules import builtin_meta  # noqa: F401
    from stagehand.modules import builtin_copy  # noqa: F401
    from stagehand.modules import builtin_pause  # noqa: F401
