# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Event Stream

Run events fan out to sinks: the console display (banners, per-host lines,
PLAY RECAP) and an optional JSON-lines file for log collectors. Sinks only
receive; nothing they do reaches the engine.

Events: playbook_start, play_start, task_start, task_end, handler_start,
play_end, playbook_end.
"""

import json
import logging
import sys
import time
from typing import IO, Any, Callable, Dict, List, Optional, TextIO, Tuple

from stagehand.engine.results import HostStats, TaskResult

logger = logging.getLogger(__name__)

EVENT_NAMES = (
    'playbook_start', 'play_start', 'task_start', 'task_end',
    'handler_start', 'play_end', 'playbook_end',
)

Sink = Callable[[str, Dict[str, Any]], None]

# ANSI colors
GREEN = '\033[32m'
YELLOW = '\033[33m'
RED = '\033[31m'
CYAN = '\033[36m'
MAGENTA = '\033[35m'
RESET = '\033[0m'

STATUS_COLORS = {
    'ok': GREEN,
    'changed': YELLOW,
    'failed': RED,
    'skipped': CYAN,
    'unreachable': RED,
    'ignored': MAGENTA,
}


def result_event(result: TaskResult) -> Dict[str, Any]:
    """Fields of a task_end event."""
    return {
        'host': result.host,
        'task': result.task_name,
        'status': result.status.value,
        'changed': result.changed,
        'failed': result.failed,
        'skipped': result.skipped,
        'ignored': result.ignored,
        'attempts': result.attempts,
        'duration': round(result.duration, 3),
        'msg': result.msg,
    }


class EventStream:
    """Dispatches events to every registered sink."""

    def __init__(self, sinks: Optional[List[Sink]] = None):
        self.sinks: List[Sink] = list(sinks or [])

    def add_sink(self, sink: Sink) -> None:
        self.sinks.append(sink)

    def emit(self, event: str, **fields: Any) -> None:
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {event}")
        for sink in list(self.sinks):
            try:
                sink(event, fields)
            except OSError as e:
                logger.warning("Dropping event sink %r after write error: %s", sink, e)
                self.sinks.remove(sink)

    def task_end(self, result: TaskResult, action: Optional[str] = None) -> None:
        self.emit('task_end', result=result, action=action, **result_event(result))


class JsonLinesWriter:
    """
    Writes one JSON object per event.

    Args:
        target: Path of the file to write, or an open text stream
    """

    def __init__(self, target: Any):
        if hasattr(target, 'write'):
            self._stream: IO[str] = target
            self._owned = False
        else:
            self._stream = open(target, 'w', encoding='utf-8')
            self._owned = True

    def __call__(self, event: str, fields: Dict[str, Any]) -> None:
        record = {'event': event, 'timestamp': round(time.time(), 6)}
        record.update({k: v for k, v in fields.items() if k not in ('result', 'stats')})
        if 'stats' in fields:
            record['stats'] = {h: s.to_dict() for h, s in fields['stats'].items()}
        self._stream.write(json.dumps(record, default=str) + '\n')
        self._stream.flush()

    def close(self) -> None:
        if self._owned:
            self._stream.close()


class ConsoleDisplay:
    """
    Human-readable output on stdout.

    Args:
        verbosity: ``-v`` count; 1 shows messages, 2 also stdout/stderr
        stream: Output stream (stdout by default)
    """

    def __init__(self, verbosity: int = 0, stream: Optional[TextIO] = None):
        self.verbosity = verbosity
        self.stream = stream or sys.stdout
        self._last_banner: Optional[Tuple[str, str]] = None

    def _print(self, text: str = "") -> None:
        print(text, file=self.stream)

    def __call__(self, event: str, fields: Dict[str, Any]) -> None:
        handler = getattr(self, f'on_{event}', None)
        if handler is not None:
            handler(fields)

    def on_playbook_start(self, fields: Dict[str, Any]) -> None:
        self._print(f"PLAYBOOK: {fields.get('playbook')}")

    def on_play_start(self, fields: Dict[str, Any]) -> None:
        self._last_banner = None
        name = fields.get('play', '')
        self._print(f"\nPLAY [{name}] " + "*" * max(0, 60 - len(name)))
        if not fields.get('hosts'):
            self._print(f"{YELLOW}skipping: no hosts matched{RESET}")

    def on_task_start(self, fields: Dict[str, Any]) -> None:
        self._banner('TASK', fields.get('task', ''))

    def on_handler_start(self, fields: Dict[str, Any]) -> None:
        self._banner('RUNNING HANDLER', fields.get('task', ''))

    def _banner(self, kind: str, name: str) -> None:
        # Hosts run independently; print each banner once per run of the same task
        if self._last_banner == (kind, name):
            return
        self._last_banner = (kind, name)
        banner = f"{kind} [{name}]"
        self._print(f"\n{banner} " + "*" * max(0, 60 - len(banner)))

    def on_task_end(self, fields: Dict[str, Any]) -> None:
        result: Optional[TaskResult] = fields.get('result')
        if result is None:
            return
        if self._last_banner is None or self._last_banner[1] != result.task_name:
            self._banner('TASK', result.task_name)
        verbose = self.verbosity > 0 or fields.get('action') in ('debug', 'stagehand.builtin.debug')
        if result.loop_results:
            for item_result in result.loop_results:
                self._result_line(item_result, verbose, item=True)
        self._result_line(result, verbose)

    def _result_line(self, result: TaskResult, verbose: bool, item: bool = False) -> None:
        status = result.status.value
        if result.ignored:
            status_label = f"{status} (ignored)"
        else:
            status_label = status
        color = STATUS_COLORS.get(status, '')

        line = f"{color}{status_label}: [{result.host}]{RESET}"
        if item:
            line = f"{color}{status_label}: [{result.host}] => (item={result.item}){RESET}"
        elif result.attempts > 1:
            line += f" (attempts={result.attempts})"

        if result.msg and (result.failed or verbose) and not item:
            line += f" => {result.msg}"
        self._print(line)

        if self.verbosity >= 2 and result.stdout:
            self._print(f"  stdout: {result.stdout[:500]}")
        if self.verbosity >= 1 and result.stderr:
            self._print(f"  stderr: {result.stderr[:500]}")

    def on_play_end(self, fields: Dict[str, Any]) -> None:
        if fields.get('halted'):
            self._print(f"\n{RED}PLAY HALTED: failure threshold reached{RESET}")

    def on_playbook_end(self, fields: Dict[str, Any]) -> None:
        stats: Dict[str, HostStats] = fields.get('stats') or {}
        states: Dict[str, str] = fields.get('host_states') or {}
        self._print("\nPLAY RECAP " + "*" * 60)

        for host, host_stats in sorted(stats.items()):
            parts = [
                f"{GREEN}ok={host_stats.ok}{RESET}",
                f"{YELLOW}changed={host_stats.changed}{RESET}",
                f"{RED}unreachable={host_stats.unreachable}{RESET}",
                f"{RED}failed={host_stats.failed}{RESET}",
                f"{CYAN}skipped={host_stats.skipped}{RESET}",
                f"rescued={host_stats.rescued}",
                f"ignored={host_stats.ignored}",
            ]
            state = states.get(host)
            suffix = f"  [{state}]" if state and state != 'done' else ""
            self._print(f"{host:30} : " + "  ".join(parts) + suffix)

        for host, failure in sorted((fields.get('failures') or {}).items()):
            self._print(f"{RED}{host}: failed at '{failure['task']}': {failure['msg']}{RESET}")
