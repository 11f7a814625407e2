"""
Shared fixtures: a scripted in-memory connection, a test configuration
and a helper that runs playbook text against an inventory.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from stagehand.connections.base import Connection, RunResult
from stagehand.engine.config import StagehandConfig, get_config, set_config
from stagehand.engine.errors import UnreachableError
from stagehand.engine.events import EventStream
from stagehand.engine.inventory import Host, InventoryManager
from stagehand.engine.loader import DataLoader
from stagehand.engine.playbook import PlaybookParser
from stagehand.engine.results import PlaybookResult
from stagehand.engine.scheduler import Scheduler
from stagehand.engine.variables import VariableManager


class MockConnection(Connection):
    """
    In-memory connection.

    Commands answer from ``responses``: (substring, [(rc, stdout, stderr, delay), ...]).
    Each answer list is consumed in order, the last answer repeats. Files
    live in ``files``.
    """

    def __init__(self, host: Host, responses: List[Tuple[str, List[tuple]]],
                 unreachable: bool = False):
        super().__init__(host)
        self.responses = responses
        self.unreachable = unreachable
        self.calls: List[Dict[str, Any]] = []
        self.files: Dict[str, bytes] = {}
        self.modes: Dict[str, str] = {}
        self.dirs: set = set()
        self.connect_count = 0

    @property
    def commands_run(self) -> List[str]:
        return [call['command'] for call in self.calls]

    async def connect(self) -> None:
        self.connect_count += 1
        if self.unreachable:
            raise UnreachableError(self.host.name, "Connection refused", "mock")
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        self.calls.append({'command': command, 'shell': shell, 'cwd': cwd,
                           'environment': environment})
        for pattern, answers in self.responses:
            if pattern in command:
                answer = answers.pop(0) if len(answers) > 1 else answers[0]
                rc, stdout, stderr, delay = answer
                if delay:
                    await asyncio.sleep(delay)
                return RunResult(rc=rc, stdout=stdout, stderr=stderr)
        return RunResult(rc=0, stdout="ok", stderr="")

    async def put(self, content: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        self.files[remote_path] = content
        if mode:
            self.modes[remote_path] = mode

    async def read(self, remote_path: str) -> Optional[bytes]:
        return self.files.get(remote_path)

    async def stat(self, remote_path: str) -> Optional[dict]:
        if remote_path in self.dirs:
            return {'exists': True, 'isdir': True, 'size': 0, 'mode': '0755'}
        if remote_path not in self.files:
            return None
        return {
            'exists': True,
            'isdir': False,
            'size': len(self.files[remote_path]),
            'mode': self.modes.get(remote_path, '0644'),
        }


class MockConnectionFactory:
    """Builds MockConnections and remembers them by host name."""

    def __init__(self):
        self.connections: Dict[str, MockConnection] = {}
        self.unreachable: set = set()
        self._responses: Dict[str, List[Tuple[str, List[tuple]]]] = {}

    def respond(self, pattern: str, rc: int = 0, stdout: str = "", stderr: str = "",
                host: str = '*', delay: float = 0.0, then: Optional[List[tuple]] = None) -> None:
        """Answer commands containing ``pattern``; ``then`` lists later answers as (rc, stdout)."""
        answers = [(rc, stdout, stderr, delay)]
        for later in then or []:
            answers.append((later[0], later[1], "", 0.0))
        self._responses.setdefault(host, []).append((pattern, answers))

    def __call__(self, host: Host) -> MockConnection:
        responses = [(pattern, list(answers)) for pattern, answers
                     in self._responses.get(host.name, []) + self._responses.get('*', [])]
        conn = MockConnection(host, responses, unreachable=host.name in self.unreachable)
        self.connections[host.name] = conn
        return conn

    def commands(self, host: str) -> List[str]:
        conn = self.connections.get(host)
        return conn.commands_run if conn else []


@pytest.fixture(autouse=True)
def stagehand_config():
    """Fast retries for every test; the previous config is restored afterwards."""
    previous = get_config()
    config = StagehandConfig(retry_delay=0.0)
    set_config(config)
    yield config
    set_config(previous)


@pytest.fixture
def connection_factory() -> MockConnectionFactory:
    return MockConnectionFactory()


@pytest.fixture
def mock_connection() -> MockConnection:
    return MockConnection(Host('web1'), [])


DEFAULT_INVENTORY = """
webservers:
  hosts:
    web1:
    web2:
    web3:
"""


class PlaybookHarness:
    """Parses playbook text and runs it with the mock connection factory."""

    def __init__(self, tmp_path: Path, factory: MockConnectionFactory):
        self.tmp_path = tmp_path
        self.factory = factory
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.inventory: Optional[InventoryManager] = None

    def event_names(self) -> List[str]:
        return [name for name, _ in self.events]

    async def run(self, playbook: str, inventory: str = DEFAULT_INVENTORY,
                  extra_vars: Optional[Dict[str, Any]] = None, **kwargs: Any) -> PlaybookResult:
        inventory_path = self.tmp_path / 'inventory.yml'
        inventory_path.write_text(inventory)
        playbook_path = self.tmp_path / 'site.yml'
        playbook_path.write_text(playbook)

        loader = DataLoader()
        self.inventory = InventoryManager(loader).parse(inventory_path)
        plays = PlaybookParser(playbook_path, loader).parse()
        events = EventStream([lambda name, fields: self.events.append((name, fields))])
        scheduler = Scheduler(
            self.inventory,
            VariableManager(self.inventory, extra_vars),
            connection_factory=self.factory,
            events=events,
            base_dir=self.tmp_path,
            **kwargs,
        )
        return await scheduler.run_playbook(plays, str(playbook_path))


@pytest.fixture
def harness(tmp_path: Path, connection_factory: MockConnectionFactory) -> PlaybookHarness:
    return PlaybookHarness(tmp_path, connection_factory)
