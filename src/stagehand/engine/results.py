# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Result Classes

Data structures for task, play, and playbook execution results.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import json
import time

from stagehand.engine.errors import ExitCode
from stagehand.engine.vault import VaultEncryptedValue


class TaskStatus(Enum):
    """Status of a task execution."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"


class HostState(Enum):
    """Where a host stands within a play."""
    ACTIVE = "active"
    FAILED = "failed"
    UNREACHABLE = "unreachable"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def terminal_failure(self) -> bool:
        return self in (HostState.FAILED, HostState.UNREACHABLE)


@dataclass
class TaskResult:
    """Result of executing a single task on a single host."""

    host: str
    task_name: str
    status: TaskStatus
    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    # Additional module-specific results
    results: Dict[str, Any] = field(default_factory=dict)
    # For loop results
    loop_results: Optional[List['TaskResult']] = None
    attempts: int = 1
    ignored: bool = False
    # Loop item this result belongs to
    item: Any = None
    start: float = field(default_factory=time.time)
    end: Optional[float] = None

    @property
    def duration(self) -> float:
        if self.end is None:
            return 0.0
        return max(0.0, self.end - self.start)

    def finish(self) -> 'TaskResult':
        """Stamp the end time."""
        self.end = time.time()
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result = {
            "host": self.host,
            "task": self.task_name,
            "status": self.status.value,
            "changed": self.changed,
            "rc": self.rc,
            "attempts": self.attempts,
            "duration": round(self.duration, 3),
        }
        if self.ignored:
            result["ignored"] = True
        if self.item is not None:
            result["item"] = _jsonable(self.item)
        if self.stdout:
            result["stdout"] = self.stdout
        if self.stderr:
            result["stderr"] = self.stderr
        if self.msg:
            result["msg"] = self.msg
        if self.results:
            result["results"] = _jsonable(self.results)
        if self.loop_results:
            result["loop_results"] = [r.to_dict() for r in self.loop_results]
        return result

    def to_register(self) -> Dict[str, Any]:
        """
        Variable form of this result, as stored by ``register``.

        Module-specific fields sit at the top level next to the common
        ones; loop results appear under ``results``.
        """
        data: Dict[str, Any] = dict(self.results)
        data.update({
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.status == TaskStatus.UNREACHABLE,
            "rc": self.rc,
            "stdout": self.stdout,
            "stdout_lines": self.stdout.splitlines(),
            "stderr": self.stderr,
            "stderr_lines": self.stderr.splitlines(),
            "msg": self.msg,
            "attempts": self.attempts,
        })
        if self.loop_results is not None:
            data["results"] = [r.to_register() for r in self.loop_results]
        return data

    @property
    def failed(self) -> bool:
        """Check if the task failed."""
        return self.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)

    @property
    def skipped(self) -> bool:
        return self.status == TaskStatus.SKIPPED

    @property
    def ok(self) -> bool:
        """Check if the task succeeded (ok or changed)."""
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)


def _jsonable(value: Any) -> Any:
    """Best-effort conversion of module fields for JSON output."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, VaultEncryptedValue):
        return "<vault-encrypted>"
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


@dataclass
class HostStats:
    """Statistics for a single host across all tasks."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    rescued: int = 0
    ignored: int = 0

    def record(self, result: TaskResult) -> None:
        """Record a task result."""
        status = result.status
        if status == TaskStatus.OK:
            self.ok += 1
        elif status == TaskStatus.CHANGED:
            self.changed += 1
        elif status == TaskStatus.FAILED:
            if result.ignored:
                self.ignored += 1
            else:
                self.failed += 1
        elif status == TaskStatus.SKIPPED:
            self.skipped += 1
        elif status == TaskStatus.UNREACHABLE:
            if result.ignored:
                self.ignored += 1
            else:
                self.unreachable += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host": self.host,
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "rescued": self.rescued,
            "ignored": self.ignored,
        }

    def merge(self, other: 'HostStats') -> None:
        """Merge another HostStats into this one."""
        self.ok += other.ok
        self.changed += other.changed
        self.failed += other.failed
        self.skipped += other.skipped
        self.unreachable += other.unreachable
        self.rescued += other.rescued
        self.ignored += other.ignored


@dataclass
class HostFailure:
    """First unrecovered failure of a host in a play."""

    task: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"task": self.task, "msg": self.message}


@dataclass
class PlayResult:
    """Result of executing a single play."""

    play_name: str
    hosts: List[str]
    task_results: List[TaskResult] = field(default_factory=list)
    host_stats: Dict[str, HostStats] = field(default_factory=dict)
    host_states: Dict[str, HostState] = field(default_factory=dict)
    failures: Dict[str, HostFailure] = field(default_factory=dict)
    halted: bool = False

    def __post_init__(self) -> None:
        for host in self.hosts:
            self.host_stats.setdefault(host, HostStats(host))

    def add_result(self, result: TaskResult) -> None:
        """Add a task result."""
        self.task_results.append(result)

        if result.host not in self.host_stats:
            self.host_stats[result.host] = HostStats(result.host)
        self.host_stats[result.host].record(result)

    def results_for(self, host: str) -> List[TaskResult]:
        return [r for r in self.task_results if r.host == host]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "play": self.play_name,
            "hosts": self.hosts,
            "halted": self.halted,
            "host_states": {h: s.value for h, s in self.host_states.items()},
            "failures": {h: f.to_dict() for h, f in self.failures.items()},
            "tasks": [r.to_dict() for r in self.task_results],
            "stats": {h: s.to_dict() for h, s in self.host_stats.items()},
        }

    @property
    def has_failures(self) -> bool:
        """Check if any host failed in this play, or the play halted."""
        return self.halted or any(
            state == HostState.FAILED for state in self.host_states.values()
        )

    @property
    def has_unreachable(self) -> bool:
        return any(state == HostState.UNREACHABLE for state in self.host_states.values())


@dataclass
class PlaybookResult:
    """Result of executing an entire playbook."""

    playbook_path: str
    play_results: List[PlayResult] = field(default_factory=list)

    def add_play_result(self, result: PlayResult) -> None:
        """Add a play result."""
        self.play_results.append(result)

    def get_final_stats(self) -> Dict[str, HostStats]:
        """Get aggregated stats for all hosts across all plays."""
        final_stats: Dict[str, HostStats] = {}

        for play_result in self.play_results:
            for host, stats in play_result.host_stats.items():
                if host not in final_stats:
                    final_stats[host] = HostStats(host)
                final_stats[host].merge(stats)

        return final_stats

    def get_final_states(self) -> Dict[str, str]:
        """Terminal state of each host in the last play that targeted it."""
        states: Dict[str, str] = {}
        for play_result in self.play_results:
            for host, state in play_result.host_states.items():
                # A failure in an earlier play is not erased by a later success
                if states.get(host) in (HostState.FAILED.value, HostState.UNREACHABLE.value):
                    continue
                states[host] = state.value
        return states

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "playbook": self.playbook_path,
            "success": self.success,
            "exit_code": self.exit_code,
            "plays": [p.to_dict() for p in self.play_results],
            "stats": {h: s.to_dict() for h, s in self.get_final_stats().items()},
            "host_states": self.get_final_states(),
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    @property
    def success(self) -> bool:
        """Check if the entire playbook succeeded."""
        return not any(p.has_failures or p.has_unreachable for p in self.play_results)

    @property
    def exit_code(self) -> int:
        """Get appropriate exit code."""
        if any(p.has_failures for p in self.play_results):
            return ExitCode.HOST_FAILED
        if any(p.has_unreachable for p in self.play_results):
            return ExitCode.HOST_UNREACHABLE
        return ExitCode.SUCCESS
