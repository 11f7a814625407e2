# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Connection Base Class

Abstract base class for all connection types, and the factory that picks
one from a host's ``stagehand_connection`` variable.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from stagehand.engine.errors import UnreachableError
from stagehand.engine.inventory import Host

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Result of running a command on a host."""

    rc: int
    stdout: str
    stderr: str
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.rc == 0


class Connection(ABC):
    """
    Abstract base class for connections.

    All connection types (SSH, WinRM, local) implement this interface.
    Establishment failures raise UnreachableError; a command that exceeds
    its timeout raises stagehand's TimeoutError after the command has been
    stopped. A non-zero exit status is not an error here.
    """

    def __init__(self, host: Host):
        self.host = host
        self.connected = False

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        """
        Run a command on the host.

        Args:
            command: Command to execute
            shell: If True, run through a shell
            timeout: Optional timeout in seconds
            cwd: Working directory
            environment: Environment variables

        Returns:
            RunResult with rc, stdout, stderr and duration
        """

    @abstractmethod
    async def put(self, content: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        """
        Write a file on the host, creating parent directories.

        Args:
            content: File content
            remote_path: Destination path
            mode: Optional file mode (e.g., '0644')
        """

    @abstractmethod
    async def read(self, remote_path: str) -> Optional[bytes]:
        """Content of a file on the host, or None if it does not exist."""

    @abstractmethod
    async def stat(self, remote_path: str) -> Optional[dict]:
        """
        Get file/directory information.

        Returns:
            Dict with 'exists', 'isdir', 'size', 'mode' or None if not found
        """

    @property
    def connection_type(self) -> str:
        """Return the connection type name."""
        return self.__class__.__name__.replace('Connection', '').lower()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.host.name!r})"


ConnectionFactory = Callable[[Host], Connection]


def create_connection(host: Host) -> Connection:
    """
    Create (but do not open) the connection a host asks for.

    ``local`` for localhost unless told otherwise, ``ssh`` by default,
    ``winrm``/``psrp`` for Windows hosts.
    """
    conn_type = host.connection

    if conn_type == 'local':
        from stagehand.connections.local import LocalConnection
        return LocalConnection(host)

    if conn_type == 'ssh':
        from stagehand.connections.ssh_asyncssh import SSHConnection
        return SSHConnection(host)

    if conn_type in ('winrm', 'psrp'):
        from stagehand.connections.winrm_psrp import WinRMConnection
        return WinRMConnection(host)

    raise UnreachableError(host.name, f"Unknown connection type: {conn_type}", conn_type)
