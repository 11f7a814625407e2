# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Local Connection

Execute commands on the local machine (no remote connection).
"""

import asyncio
import logging
import os
import shlex
import signal
import sys
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional

from stagehand.connections.base import Connection, RunResult
from stagehand.engine.errors import TimeoutError

logger = logging.getLogger(__name__)


class LocalConnection(Connection):
    """
    Local connection - execute commands on the control node.

    Used for localhost execution without any network operations.
    """

    async def connect(self) -> None:
        """Local connection is always available."""
        self.connected = True

    async def close(self) -> None:
        """Nothing to close for local connection."""
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
        Run a command locally.

        The process runs in its own session so that a timeout or a
        cancellation kills the whole process group.
        """
        env = os.environ.copy()
        if environment:
            env.update({str(k): str(v) for k, v in environment.items()})

        popen_kwargs = {
            'stdout': asyncio.subprocess.PIPE,
            'stderr': asyncio.subprocess.PIPE,
            'stdin': asyncio.subprocess.DEVNULL,
            'cwd': cwd,
            'env': env,
        }
        if sys.platform != 'win32':
            popen_kwargs['start_new_session'] = True

        start = time.monotonic()
        try:
            if shell:
                process = await asyncio.create_subprocess_shell(command, **popen_kwargs)
            else:
                process = await asyncio.create_subprocess_exec(*shlex.split(command), **popen_kwargs)
        except OSError as e:
            # Missing executable or bad cwd behaves like a failed command
            return RunResult(rc=127, stdout="", stderr=str(e), duration=time.monotonic() - start)

        logger.debug("Started local process %s: %s", process.pid, command)
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise TimeoutError(f"Command timed out after {timeout}s: {command}", timeout)
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        return RunResult(
            rc=process.returncode if process.returncode is not None else 0,
            stdout=stdout_bytes.decode('utf-8', errors='replace'),
            stderr=stderr_bytes.decode('utf-8', errors='replace'),
            duration=time.monotonic() - start,
        )

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            if sys.platform != 'win32':
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            return
        await process.wait()
        logger.debug("Killed local process %s", process.pid)

    async def put(self, content: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        """Write a local file atomically."""
        dest = Path(remote_path)
        dest.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp = tempfile.mkstemp(dir=str(dest.parent), prefix=f".{dest.name}.")
        try:
            with os.fdopen(fd, 'wb') as fh:
                fh.write(content)
            if mode:
                os.chmod(tmp, int(str(mode), 8))
            elif dest.exists():
                os.chmod(tmp, dest.stat().st_mode & 0o7777)
            else:
                os.chmod(tmp, 0o644)
            os.replace(tmp, dest)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    async def read(self, remote_path: str) -> Optional[bytes]:
        path = Path(remote_path)
        if not path.is_file():
            return None
        return path.read_bytes()

    async def stat(self, remote_path: str) -> Optional[dict]:
        """
        Get file/directory information.

        Args:
            remote_path: Path to stat

        Returns:
            Dict with file info or None if not found
        """
        path = Path(remote_path)

        if not path.exists():
            return None

        st = path.stat()
        return {
            'exists': True,
            'isdir': path.is_dir(),
            'isfile': path.is_file(),
            'size': st.st_size,
            'mtime': st.st_mtime,
            'mode': oct(st.st_mode & 0o7777)[2:].zfill(4),
        }
