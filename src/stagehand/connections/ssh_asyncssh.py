# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand SSH Connection (asyncssh)

SSH connection using asyncssh for async operations.
"""

import asyncio
import logging
import os
import posixpath
import stat as stat_module
import time
from typing import Dict, Optional

import asyncssh

from stagehand.connections.base import Connection, RunResult
from stagehand.engine.config import get_config
from stagehand.engine.errors import TimeoutError, UnreachableError
from stagehand.engine.inventory import Host

logger = logging.getLogger(__name__)


class SSHConnection(Connection):
    """
    SSH connection using asyncssh.

    Supports:
    - Key-based authentication
    - Password authentication
    - SSH agent
    - Custom ports
    """

    def __init__(self, host: Host):
        super().__init__(host)
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._sftp: Optional[asyncssh.SFTPClient] = None

    async def connect(self) -> None:
        """Establish SSH connection."""
        config = get_config()
        user = self.host.user or os.getenv('USER', 'root')

        connect_kwargs = {
            'host': self.host.address,
            'port': self.host.port or 22,
            'username': user,
            'connect_timeout': float(self.host.get_variable('stagehand_ssh_timeout', config.connect_timeout)),
        }

        password = self.host.get_variable('stagehand_password')
        if password:
            connect_kwargs['password'] = str(password)

        private_key = self.host.get_variable('stagehand_private_key_file')
        if private_key:
            connect_kwargs['client_keys'] = [os.path.expanduser(str(private_key))]

        host_key_checking = self.host.get_variable('stagehand_host_key_checking', config.host_key_checking)
        if not host_key_checking or str(host_key_checking).lower() in ('false', 'no', '0'):
            connect_kwargs['known_hosts'] = None

        logger.debug("Connecting to %s@%s:%s", user, connect_kwargs['host'], connect_kwargs['port'])
        try:
            self._conn = await asyncssh.connect(**connect_kwargs)
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            raise UnreachableError(self.host.name, str(e) or type(e).__name__, 'ssh')
        self.connected = True

    async def close(self) -> None:
        """Close SSH connection."""
        if self._sftp:
            self._sftp.exit()
            self._sftp = None

        if self._conn:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None
        self.connected = False

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        """
        Run a command over SSH.

        On timeout the channel is closed, which stops the remote process.
        """
        if not self._conn:
            raise UnreachableError(self.host.name, "Not connected", 'ssh')

        full_command = command

        if cwd:
            full_command = f"cd {shell_quote(cwd)} && {command}"

        if shell or cwd:
            full_command = f"/bin/sh -c {shell_quote(full_command)}"

        if environment:
            env_prefix = " ".join(f"{k}={shell_quote(str(v))}" for k, v in environment.items())
            full_command = f"env {env_prefix} {full_command}"

        start = time.monotonic()
        try:
            process = await self._conn.create_process(full_command)
        except (OSError, asyncssh.Error) as e:
            raise UnreachableError(self.host.name, f"Channel failed: {e}", 'ssh')

        try:
            completed = await asyncio.wait_for(process.wait(check=False), timeout=timeout)
        except asyncio.TimeoutError:
            process.close()
            raise TimeoutError(f"Command timed out after {timeout}s: {command}", timeout)
        except asyncio.CancelledError:
            process.close()
            raise
        except asyncssh.DisconnectError as e:
            raise UnreachableError(self.host.name, f"Connection lost: {e}", 'ssh')

        rc = completed.exit_status
        if rc is None:
            # Killed by a signal
            rc = -1
        return RunResult(
            rc=rc,
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
            duration=time.monotonic() - start,
        )

    async def _get_sftp(self) -> asyncssh.SFTPClient:
        """Get or create SFTP client."""
        if not self._conn:
            raise UnreachableError(self.host.name, "Not connected", 'ssh')
        if self._sftp is None:
            self._sftp = await self._conn.start_sftp_client()
        return self._sftp

    async def put(self, content: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        """Upload content via SFTP."""
        sftp = await self._get_sftp()

        remote_dir = posixpath.dirname(remote_path)
        if remote_dir:
            await sftp.makedirs(remote_dir, exist_ok=True)

        async with sftp.open(remote_path, 'wb') as fh:
            await fh.write(content)

        if mode:
            await sftp.chmod(remote_path, int(str(mode), 8))

    async def read(self, remote_path: str) -> Optional[bytes]:
        sftp = await self._get_sftp()
        try:
            async with sftp.open(remote_path, 'rb') as fh:
                return await fh.read()
        except asyncssh.SFTPNoSuchFile:
            return None

    async def stat(self, remote_path: str) -> Optional[dict]:
        """Get file/directory information via SFTP."""
        sftp = await self._get_sftp()

        try:
            attrs = await sftp.stat(remote_path)
        except asyncssh.SFTPNoSuchFile:
            return None

        permissions = attrs.permissions or 0
        return {
            'exists': True,
            'isdir': stat_module.S_ISDIR(permissions),
            'isfile': stat_module.S_ISREG(permissions),
            'size': attrs.size or 0,
            'mtime': attrs.mtime or 0,
            'mode': oct(permissions & 0o7777)[2:].zfill(4),
        }


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


def shell_quote(s: str) -> str:
    """Quote a string for shell use."""
    return "'" + s.replace("'", "'\"'\"'") + "'"
