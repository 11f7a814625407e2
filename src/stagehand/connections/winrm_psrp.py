# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand WinRM/PSRP Connection

Windows Remote Management connection using pypsrp. pypsrp is synchronous,
so every call runs in the default executor.
"""

import asyncio
import base64
import json
import logging
import time
from typing import Dict, Optional

from pypsrp.client import Client
from pypsrp.exceptions import AuthenticationError, WinRMError

from stagehand.connections.base import Connection, RunResult
from stagehand.engine.config import get_config
from stagehand.engine.errors import TimeoutError, UnreachableError
from stagehand.engine.inventory import Host

logger = logging.getLogger(__name__)


class WinRMConnection(Connection):
    """
    WinRM connection using pypsrp (PowerShell Remoting Protocol).

    Supports:
    - NTLM authentication
    - Basic authentication
    - Kerberos authentication (if configured)
    - SSL/TLS connections
    """

    def __init__(self, host: Host):
        super().__init__(host)
        self._client: Optional[Client] = None

    async def connect(self) -> None:
        """Establish WinRM connection and prove it with a trivial command."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._sync_connect)
        except (AuthenticationError, WinRMError, OSError) as e:
            self._client = None
            raise UnreachableError(self.host.name, str(e), 'winrm')
        self.connected = True

    def _sync_connect(self) -> None:
        """Synchronous connection setup."""
        scheme = self.host.get_variable('stagehand_winrm_scheme', 'http')
        ssl = scheme == 'https'
        port = self.host.port or (5986 if ssl else 5985)

        self._client = Client(
            self.host.address,
            port=port,
            username=self.host.user,
            password=self.host.get_variable('stagehand_password'),
            ssl=ssl,
            cert_validation=bool(self.host.get_variable('stagehand_winrm_cert_validation', True)) if ssl else False,
            auth=self.host.get_variable('stagehand_winrm_transport', 'negotiate'),
            connection_timeout=get_config().connect_timeout,
        )
        self._client.execute_ps("$null")

    async def close(self) -> None:
        """Close WinRM connection."""
        # pypsrp handles connection pooling, just clear references
        self._client = None
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
        Run a command via PowerShell Remoting.

        pypsrp cannot interrupt a running pipeline, so on timeout the call
        is abandoned and TimeoutError is raised.
        """
        if not self._client:
            raise UnreachableError(self.host.name, "Not connected", 'winrm')

        ps_script = ""
        if cwd:
            ps_script += f"Set-Location -Path {ps_quote(cwd)}\n"
        if environment:
            for key, value in environment.items():
                ps_script += f"$env:{key} = {ps_quote(str(value))}\n"

        if shell:
            ps_script += command
        else:
            ps_script += f"cmd.exe /c {ps_quote(command)}\n$host.SetShouldExit($LASTEXITCODE)"

        loop = asyncio.get_running_loop()
        start = time.monotonic()
        try:
            rc, stdout, stderr = await asyncio.wait_for(
                loop.run_in_executor(None, self._run_powershell, ps_script),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"Command timed out after {timeout}s: {command}", timeout)
        except (AuthenticationError, WinRMError, OSError) as e:
            raise UnreachableError(self.host.name, f"Connection lost: {e}", 'winrm')

        return RunResult(rc=rc, stdout=stdout, stderr=stderr, duration=time.monotonic() - start)

    def _run_powershell(self, script: str):
        """Synchronous PowerShell execution."""
        output, streams, had_errors = self._client.execute_ps(script)
        stderr = "\n".join(str(err) for err in (streams.error if streams else []))
        return (1 if had_errors else 0), output or "", stderr

    async def put(self, content: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        """Upload content as base64 through PowerShell; ``mode`` is ignored on Windows."""
        encoded = base64.b64encode(content).decode('ascii')
        path = ps_quote(remote_path.replace('/', '\\'))
        script = (
            f"$p = {path}\n"
            "New-Item -ItemType Directory -Force -Path (Split-Path -Parent $p) | Out-Null\n"
            f"[System.IO.File]::WriteAllBytes($p, [Convert]::FromBase64String('{encoded}'))"
        )
        result = await self.run(script)
        if result.rc != 0:
            raise OSError(f"Upload to {remote_path} failed: {result.stderr}")

    async def read(self, remote_path: str) -> Optional[bytes]:
        path = ps_quote(remote_path.replace('/', '\\'))
        script = (
            f"if (Test-Path -PathType Leaf {path}) "
            f"{{ [Convert]::ToBase64String([System.IO.File]::ReadAllBytes({path})) }} "
            "else { 'MISSING' }"
        )
        result = await self.run(script)
        text = result.stdout.strip()
        if result.rc != 0 or text == 'MISSING':
            return None
        return base64.b64decode(text)

    async def stat(self, remote_path: str) -> Optional[dict]:
        """Get file/directory information via PowerShell."""
        path = ps_quote(remote_path.replace('/', '\\'))
        script = (
            f"if (Test-Path {path}) {{ $i = Get-Item {path}; "
            "@{ isdir = $i.PSIsContainer; size = if ($i.PSIsContainer) { 0 } else { $i.Length } } "
            "| ConvertTo-Json } else { 'null' }"
        )
        result = await self.run(script)
        text = result.stdout.strip()
        if result.rc != 0 or not text or text == 'null':
            return None
        try:
            data = json.loads(text)
        except ValueError:
            return None
        return {
            'exists': True,
            'isdir': bool(data.get('isdir')),
            'isfile': not data.get('isdir'),
            'size': data.get('size', 0),
            'mode': None,
        }


def ps_quote(s: str) -> str:
    """Quote a string for PowerShell."""
    return "'" + s.replace("'", "''") + "'"
