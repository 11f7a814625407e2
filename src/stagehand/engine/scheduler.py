# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Scheduler

Async play orchestration using asyncio: one task per host, each walking
its own stream of tasks and blocks, with a semaphore capping concurrent
task executions (like Ansible's forks).

Gated plays (``max_fail_percentage``, ``any_errors_fatal`` or
``strategy: linear``) keep hosts in lockstep through a step barrier so a
halt raised by one host stops the others before their next task.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

from stagehand.connections.base import Connection, ConnectionFactory, create_connection
from stagehand.engine.errors import StagehandError, TaskFailure, TimeoutError
from stagehand.engine.events import EventStream
from stagehand.engine.executor import HostRunState, TaskExecutor
from stagehand.engine.inventory import Host, InventoryManager
from stagehand.engine.playbook import FQCN_PREFIX, Block, Node, Play, Task, iter_tasks, should_run
from stagehand.engine.results import (
    HostFailure,
    HostState,
    PlaybookResult,
    PlayResult,
    TaskResult,
    TaskStatus,
)
from stagehand.engine.templating import TemplateEngine, get_template_engine
from stagehand.engine.variables import Layer, ScopeStack, VariableManager

logger = logging.getLogger(__name__)

META_ACTIONS = ('meta', FQCN_PREFIX + 'meta')


class StepBarrier:
    """
    Lockstep gate for the hosts of one play.

    A host may start its n-th step once every other active host has
    completed n-1 steps. Steps are task positions in the play, so a host
    skipping part of a block still advances past every task in it.
    ``halt()`` wakes every waiter; waiters then see ``False`` and abort.
    Without lockstep only the halt flag is honoured.
    """

    def __init__(self, hosts: Iterable[str], lockstep: bool = False):
        self.lockstep = lockstep
        self.completed: Dict[str, int] = {name: 0 for name in hosts}
        self.active = set(self.completed)
        self.halted = False
        self._cond = asyncio.Condition()

    def _ready(self, host: str, step: int) -> bool:
        if self.halted:
            return True
        return all(self.completed[other] >= step - 1
                   for other in self.active if other != host)

    async def wait(self, host: str, step: int) -> bool:
        """Wait until ``host`` may start ``step``; False once the play halted."""
        if self.lockstep and not self._ready(host, step):
            async with self._cond:
                await self._cond.wait_for(lambda: self._ready(host, step))
        return not self.halted

    async def complete(self, host: str, step: int) -> None:
        self.completed[host] = step
        await self._notify()

    async def leave(self, host: str) -> None:
        """The host's stream is over; nobody waits for it any more."""
        self.active.discard(host)
        await self._notify()

    async def halt(self) -> None:
        self.halted = True
        await self._notify()

    async def _notify(self) -> None:
        if self.lockstep:
            async with self._cond:
                self._cond.notify_all()


@dataclass
class _PlayRun:
    """Everything the host streams of one play share."""

    play: Play
    result: PlayResult
    executor: TaskExecutor
    barrier: StepBarrier
    semaphore: asyncio.Semaphore
    states: Dict[str, HostRunState]


class Scheduler:
    """
    Runs plays against inventory hosts.

    Args:
        inventory: Resolved inventory
        variable_manager: Builds each host's scope stack per play
        forks: Maximum number of concurrent task executions
        connection_factory: Builds a host's connection (injectable for tests)
        check_mode: Dry run; mutating actions only report
        only_tags: ``--tags``
        skip_tags: ``--skip-tags``
        limit: ``--limit`` host pattern, intersected with each play's hosts
        events: Event stream receiving run events
        base_dir: Playbook directory
        verbosity: ``-v`` count
    """

    def __init__(
        self,
        inventory: InventoryManager,
        variable_manager: VariableManager,
        forks: int = 5,
        connection_factory: Optional[ConnectionFactory] = None,
        check_mode: bool = False,
        only_tags: Sequence[str] = (),
        skip_tags: Sequence[str] = (),
        limit: Optional[str] = None,
        events: Optional[EventStream] = None,
        base_dir: Optional[Path] = None,
        verbosity: int = 0,
        templar: Optional[TemplateEngine] = None,
    ):
        self.inventory = inventory
        self.variable_manager = variable_manager
        self.forks = max(1, forks)
        self.connection_factory = connection_factory or create_connection
        self.check_mode = check_mode
        self.only_tags = list(only_tags)
        self.skip_tags = list(skip_tags)
        self.limit = limit
        self.events = events or EventStream()
        self.base_dir = base_dir
        self.verbosity = verbosity
        self.templar = templar or get_template_engine()

        # Connections stay open across plays
        self._connections: Dict[str, Connection] = {}
        # Hosts that failed or became unreachable are left out of later plays
        self._dead_hosts: Set[str] = set()

    async def run_playbook(self, plays: List[Play], playbook_path: str = "") -> PlaybookResult:
        """
        Run every play in order.

        Args:
            plays: Parsed plays
            playbook_path: Path reported in results and events

        Returns:
            PlaybookResult with all execution results
        """
        result = PlaybookResult(playbook_path=playbook_path)
        self.events.emit('playbook_start', playbook=playbook_path, plays=len(plays),
                         check_mode=self.check_mode)
        try:
            for play in plays:
                play_result = await self.run_play(play)
                result.add_play_result(play_result)
        finally:
            await self.close_connections()

        failures: Dict[str, Dict[str, str]] = {}
        for play_result in result.play_results:
            for host, failure in play_result.failures.items():
                failures.setdefault(host, failure.to_dict())

        self.events.emit(
            'playbook_end',
            playbook=playbook_path,
            stats=result.get_final_stats(),
            host_states=result.get_final_states(),
            failures=failures,
            success=result.success,
            exit_code=int(result.exit_code),
        )
        return result

    def _play_hosts(self, play: Play) -> List[Host]:
        hosts = self.inventory.get_hosts(play.hosts, order=play.order)
        if self.limit:
            allowed = {h.name for h in self.inventory.get_hosts(self.limit)}
            hosts = [h for h in hosts if h.name in allowed]
        return [h for h in hosts if h.name not in self._dead_hosts]

    async def run_play(self, play: Play) -> PlayResult:
        """
        Run one play on its hosts.

        Args:
            play: Play to run

        Returns:
            PlayResult with the play's task results and host states
        """
        hosts = self._play_hosts(play)
        host_names = [h.name for h in hosts]
        play_result = PlayResult(play_name=play.name, hosts=host_names)
        self.events.emit('play_start', play=play.name, hosts=host_names)

        if not hosts:
            logger.warning("Play '%s': no hosts matched pattern '%s'", play.name, play.hosts)
            self.events.emit('play_end', play=play.name, halted=False, host_states={})
            return play_result

        states: Dict[str, HostRunState] = {}
        for host in hosts:
            scope = self.variable_manager.host_stack(
                host, play.vars, play.role_defaults,
                play_hosts=host_names, check_mode=self.check_mode,
            )
            states[host.name] = HostRunState(host=host, scope=scope,
                                             connection=self._connections.get(host.name))

        run = _PlayRun(
            play=play,
            result=play_result,
            executor=TaskExecutor(
                self.variable_manager,
                handlers=play.handlers,
                connection_factory=self.connection_factory,
                check_mode=self.check_mode,
                base_dir=self.base_dir,
                environment=play.environment,
                verbosity=self.verbosity,
                templar=self.templar,
            ),
            barrier=StepBarrier(host_names, lockstep=play.gated),
            semaphore=asyncio.Semaphore(self.forks),
            states=states,
        )

        logger.info("Play '%s' on %d host(s)%s", play.name, len(hosts),
                    " in lockstep" if play.gated else "")
        streams = {name: asyncio.ensure_future(self._host_stream(run, hs))
                   for name, hs in states.items()}
        done, pending = await asyncio.wait(list(streams.values()), timeout=play.timeout)

        if pending:
            for stream in pending:
                stream.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for name, stream in streams.items():
                if stream in pending:
                    self._timed_out(run, states[name])
        for stream in done:
            stream.result()

        for name, hs in states.items():
            play_result.host_states[name] = hs.state
            if hs.connection is not None:
                self._connections[name] = hs.connection
            if hs.state.terminal_failure:
                self._dead_hosts.add(name)

        self.events.emit(
            'play_end',
            play=play.name,
            halted=play_result.halted,
            host_states={h: s.value for h, s in play_result.host_states.items()},
        )
        return play_result

    async def close_connections(self) -> None:
        """Close every connection opened during the run."""
        for name, conn in list(self._connections.items()):
            try:
                await conn.close()
            except (StagehandError, OSError) as e:
                logger.warning("Error closing connection to %s: %s", name, e)
        self._connections.clear()

    def _timed_out(self, run: _PlayRun, hs: HostRunState) -> None:
        error = TimeoutError(f"Play timed out after {run.play.timeout:g}s", run.play.timeout)
        task_name = hs.current_task or run.play.name
        result = TaskResult(hs.name, task_name, TaskStatus.FAILED, msg=error.message).finish()
        run.result.add_result(result)
        self.events.task_end(result)

        hs.state = HostState.FAILED
        run.result.failures.setdefault(hs.name, HostFailure(task_name, error.message))
        logger.warning("%s: %s", hs.name, error.message)

    # Host stream

    async def _host_stream(self, run: _PlayRun, hs: HostRunState) -> None:
        try:
            await self._run_nodes(run, hs, run.play.tasks, hs.scope)

            if self._final_flush(run, hs):
                await self._flush_handlers(run, hs)

            if not self._stopped(run, hs):
                hs.state = HostState.DONE
        except Exception as e:
            logger.exception("Unexpected error while running %s", hs.name)
            failure = TaskFailure(hs.name, hs.current_task or run.play.name, f"Internal error: {e}")
            await self._fail_host(run, hs, failure)
        finally:
            await run.barrier.leave(hs.name)

    def _final_flush(self, run: _PlayRun, hs: HostRunState) -> bool:
        if hs.ended or not hs.pending_handlers:
            return False
        if not self._stopped(run, hs):
            return True
        return (hs.state == HostState.FAILED and run.play.force_handlers
                and not hs.failed_in_block and not run.barrier.halted)

    def _stopped(self, run: _PlayRun, hs: HostRunState) -> bool:
        """Whether the host takes no further tasks in this play."""
        if hs.state == HostState.ACTIVE and run.barrier.halted:
            hs.state = HostState.ABORTED
        return hs.state != HostState.ACTIVE or hs.ended

    async def _run_nodes(self, run: _PlayRun, hs: HostRunState, nodes: List[Node],
                         scope: ScopeStack) -> Optional[TaskFailure]:
        """
        Run a list of tasks and blocks in order.

        Returns:
            The failure that stopped the list, or None
        """
        for node in nodes:
            if self._stopped(run, hs):
                return None
            if isinstance(node, Block):
                error = await self._run_block(run, hs, node, scope)
            else:
                error = await self._run_task(run, hs, node, scope)
            if error is not None:
                return error
        return None

    async def _run_block(self, run: _PlayRun, hs: HostRunState, block: Block,
                         scope: ScopeStack) -> Optional[TaskFailure]:
        scope = scope.with_layer(Layer.BLOCK, block.vars)
        try:
            enter = self.templar.evaluate_when(block.when, scope)
        except StagehandError as e:
            result = TaskResult(hs.name, block.name or "block", TaskStatus.FAILED, msg=str(e)).finish()
            return await self._record(run, hs, result)
        if not enter:
            skipped = block.block + block.rescue + block.always
            await self._advance(run, hs, hs.steps + self._step_count(skipped))
            return None

        hs.block_depth += 1
        try:
            start = hs.steps
            error = await self._run_nodes(run, hs, block.block, scope)
            await self._advance(run, hs, start + self._step_count(block.block))

            rescue_start = hs.steps
            if error is not None and block.rescue and not self._stopped(run, hs):
                logger.debug("%s: rescuing block '%s' after '%s'", hs.name, block.name, error.task)
                rescue_scope = scope.with_layer(Layer.BLOCK, {
                    'failed_task': {'name': error.task},
                    'failed_result': error.result.to_register() if error.result is not None else {},
                })
                error = await self._run_nodes(run, hs, block.rescue, rescue_scope)
                if error is None and not self._stopped(run, hs):
                    run.result.host_stats[hs.name].rescued += 1
            await self._advance(run, hs, rescue_start + self._step_count(block.rescue))

            if block.always and not self._stopped(run, hs):
                always_error = await self._run_nodes(run, hs, block.always, scope)
                if always_error is not None:
                    error = always_error
        finally:
            hs.block_depth -= 1

        if error is not None and hs.block_depth == 0 and hs.state == HostState.ACTIVE:
            hs.failed_in_block = True
            await self._fail_host(run, hs, error)
        return error

    async def _run_task(self, run: _PlayRun, hs: HostRunState, task: Task, scope: ScopeStack,
                        handler: bool = False) -> Optional[TaskFailure]:
        if not handler and not should_run(task.tags, self.only_tags, self.skip_tags):
            return None

        # Handlers run between task positions and take no step of their own
        step = hs.steps if handler else hs.steps + 1
        if handler:
            allowed = not run.barrier.halted
        else:
            allowed = await run.barrier.wait(hs.name, step)
        if not allowed:
            if hs.state == HostState.ACTIVE:
                hs.state = HostState.ABORTED
            return None
        hs.steps = step
        hs.current_task = task.display_name

        self.events.emit('handler_start' if handler else 'task_start',
                         play=run.play.name, host=hs.name, task=task.display_name)
        async with run.semaphore:
            result = await run.executor.run(task, hs, scope)

        error = await self._record(run, hs, result, action=task.module)
        if not handler:
            await run.barrier.complete(hs.name, step)

        if error is None and task.module in META_ACTIONS and not result.skipped:
            action = result.results.get('meta_action')
            if action == 'flush_handlers':
                error = await self._flush_handlers(run, hs)
            elif action == 'end_host':
                logger.info("%s: end_host requested", hs.name)
                hs.ended = True
                hs.state = HostState.DONE
        return error

    def _step_count(self, nodes: List[Node]) -> int:
        """Barrier steps taken by the tasks of ``nodes`` that pass tag selection."""
        return sum(1 for task in iter_tasks(nodes)
                   if should_run(task.tags, self.only_tags, self.skip_tags))

    async def _advance(self, run: _PlayRun, hs: HostRunState, step: int) -> None:
        """Move the host past task positions it did not run."""
        if hs.steps < step:
            hs.steps = step
            await run.barrier.complete(hs.name, step)

    async def _record(self, run: _PlayRun, hs: HostRunState, result: TaskResult,
                      action: Optional[str] = None) -> Optional[TaskFailure]:
        """Store a result and turn an unrecovered failure into the error context."""
        run.result.add_result(result)
        self.events.task_end(result, action=action)

        if result.ignored or not result.failed:
            return None

        failure = TaskFailure(hs.name, result.task_name, result.msg, result)
        if result.status == TaskStatus.UNREACHABLE:
            await self._fail_host(run, hs, failure, HostState.UNREACHABLE)
        elif hs.block_depth == 0:
            await self._fail_host(run, hs, failure)
        return failure

    async def _fail_host(self, run: _PlayRun, hs: HostRunState, failure: TaskFailure,
                         state: HostState = HostState.FAILED) -> None:
        message = failure.result.msg if failure.result is not None else failure.message
        hs.state = state
        if hs.failure is None:
            hs.failure = HostFailure(failure.task, message)
            run.result.failures.setdefault(hs.name, hs.failure)
        logger.info("%s: %s at '%s': %s", hs.name, state.value, failure.task, message)
        await self._check_gate(run)

    async def _check_gate(self, run: _PlayRun) -> None:
        if run.barrier.halted:
            return
        play = run.play
        failed = sum(1 for hs in run.states.values() if hs.state.terminal_failure)
        if not failed:
            return

        if play.any_errors_fatal:
            reason = "any_errors_fatal"
        elif (play.max_fail_percentage is not None
              and failed / len(run.states) > play.max_fail_percentage / 100):
            reason = f"{failed}/{len(run.states)} hosts failed, over max_fail_percentage {play.max_fail_percentage:g}"
        else:
            return

        logger.warning("Play '%s' halted: %s", play.name, reason)
        run.result.halted = True
        await run.barrier.halt()

    async def _flush_handlers(self, run: _PlayRun, hs: HostRunState) -> Optional[TaskFailure]:
        """Run the host's pending handlers once each, in definition order."""
        while hs.pending_handlers:
            if run.barrier.halted or hs.state in (HostState.UNREACHABLE, HostState.ABORTED):
                return None
            index = min(hs.pending_handlers)
            hs.pending_handlers.discard(index)
            error = await self._run_task(run, hs, run.play.handlers[index], hs.scope, handler=True)
            if error is not None:
                hs.pending_handlers.clear()
                return error
        return None
