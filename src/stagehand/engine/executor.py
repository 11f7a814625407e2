# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Task Executor

Runs one task on one host: guard conditions, argument rendering, action
dispatch, failure/change predicates, retries, loops, register and notify.
Everything that can go wrong on the host ends up in the returned
TaskResult; only cancellation escapes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from stagehand.connections.base import Connection, ConnectionFactory, create_connection
from stagehand.engine.config import get_config
from stagehand.engine.errors import RenderError, StagehandError, TimeoutError, UnreachableError
from stagehand.engine.inventory import Host
from stagehand.engine.playbook import Task
from stagehand.engine.results import HostFailure, HostState, TaskResult, TaskStatus
from stagehand.engine.templating import TemplateEngine, get_template_engine
from stagehand.engine.variables import Layer, ScopeStack, VariableManager
from stagehand.modules.base import ModuleContext, get_module

logger = logging.getLogger(__name__)


@dataclass
class HostRunState:
    """
    One host's cursor through a play.

    Only the scheduler changes ``state``; the executor fills the connection
    and the pending handler indices.
    """

    host: Host
    scope: ScopeStack
    state: HostState = HostState.ACTIVE
    connection: Optional[Connection] = None
    pending_handlers: Set[int] = field(default_factory=set)
    failure: Optional[HostFailure] = None
    failed_in_block: bool = False
    block_depth: int = 0
    steps: int = 0
    ended: bool = False
    current_task: Optional[str] = None

    @property
    def name(self) -> str:
        return self.host.name


class TaskExecutor:
    """
    Executes tasks for the hosts of one play.

    Args:
        variable_manager: Stores registered results and facts
        handlers: The play's handlers; ``notify`` marks indices into this list
        connection_factory: Builds a host's connection on first use
        check_mode: Global ``--check``
        base_dir: Playbook directory, for ``copy src=`` lookups
        environment: Play-level environment merged under the task's
        verbosity: ``-v`` count, for ``debug verbosity=``
    """

    def __init__(
        self,
        variable_manager: VariableManager,
        handlers: Optional[List[Task]] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        check_mode: bool = False,
        base_dir: Optional[Path] = None,
        environment: Optional[Dict[str, Any]] = None,
        verbosity: int = 0,
        templar: Optional[TemplateEngine] = None,
    ):
        self.variable_manager = variable_manager
        self.handlers = list(handlers or [])
        self.connection_factory = connection_factory or create_connection
        self.check_mode = check_mode
        self.base_dir = base_dir
        self.environment = dict(environment or {})
        self.verbosity = verbosity
        self.templar = templar or get_template_engine()

        # Handler name or listen topic -> handler indices
        self._handler_index: Dict[str, List[int]] = {}
        for index, handler in enumerate(self.handlers):
            for key in [handler.name] + handler.listen:
                self._handler_index.setdefault(key, []).append(index)

    async def run(self, task: Task, state: HostRunState, scope: ScopeStack) -> TaskResult:
        """
        Run ``task`` on the host of ``state``.

        Args:
            task: Task (or handler) to run
            state: The host's run state
            scope: Variables visible to the task (block layer included)

        Returns:
            TaskResult, stamped with start/end times
        """
        start = time.time()
        scope = scope.with_layer(Layer.ROLE_VARS, task.role_vars).with_layer(Layer.TASK, task.vars)

        try:
            if not self.templar.evaluate_when(task.when, scope):
                result = TaskResult(state.name, task.display_name, TaskStatus.SKIPPED,
                                    msg="Conditional result was False")
            elif task.loop is not None:
                result = await self._run_loop(task, state, scope)
            else:
                result = await self._run_with_retries(task, state, scope)
        except UnreachableError as e:
            result = TaskResult(state.name, task.display_name, TaskStatus.UNREACHABLE, msg=e.message)
        except StagehandError as e:
            # Render and vault errors fail the task, never retried
            result = TaskResult(state.name, task.display_name, TaskStatus.FAILED, msg=str(e))

        result.start = start
        result.finish()

        if result.status == TaskStatus.FAILED and task.ignore_errors:
            result.ignored = True
        elif result.status == TaskStatus.UNREACHABLE and task.ignore_unreachable:
            result.ignored = True

        if task.register:
            self.variable_manager.register(scope, task.register, result.to_register())

        if result.changed and not result.failed:
            self.notify(state, task.notify)

        return result

    def notify(self, state: HostRunState, names: List[str]) -> None:
        """Mark the handlers answering to ``names`` as pending for the host."""
        for name in names:
            indices = self._handler_index.get(name)
            if not indices:
                logger.warning("Notified handler '%s' is not defined in this play", name)
                continue
            state.pending_handlers.update(indices)

    async def _connection(self, state: HostRunState) -> Connection:
        """The host's connection, opened on first use."""
        if state.connection is None or not state.connection.connected:
            conn = state.connection or self.connection_factory(state.host)
            logger.debug("Opening %s connection to %s", conn.connection_type, state.name)
            await conn.connect()
            state.connection = conn
        return state.connection

    def _retry_policy(self, task: Task, scope: ScopeStack):
        config = get_config()
        retries = self.templar.render(task.retries, scope) if task.retries is not None else config.retries
        delay = self.templar.render(task.delay, scope) if task.delay is not None else config.retry_delay
        try:
            return max(0, int(retries)), max(0.0, float(delay))
        except (TypeError, ValueError):
            raise RenderError(f"retries/delay must be numbers, got {retries!r}/{delay!r}")

    async def _run_with_retries(self, task: Task, state: HostRunState, scope: ScopeStack) -> TaskResult:
        """Run until ``until`` holds, up to ``retries`` more attempts."""
        if task.until is None:
            return await self._execute_once(task, state, scope)

        retries, delay = self._retry_policy(task, scope)
        attempts = 0
        while True:
            attempts += 1
            result = await self._execute_once(task, state, scope)
            result.attempts = attempts

            if self.templar.evaluate_when(task.until, self._result_scope(task, scope, result)):
                return result
            if attempts > retries:
                result.status = TaskStatus.FAILED
                result.msg = result.msg or f"Retries exhausted after {attempts} attempts"
                return result

            logger.debug("%s: '%s' attempt %d failed its until condition, retrying in %ss",
                         state.name, task.display_name, attempts, delay)
            await asyncio.sleep(delay)

    async def _run_loop(self, task: Task, state: HostRunState, scope: ScopeStack) -> TaskResult:
        """Run the task once per loop item and combine the results."""
        items = self.templar.render_recursive(task.loop, scope)
        if isinstance(items, (str, dict)) or not isinstance(items, (list, tuple)):
            raise RenderError(f"Invalid loop data, expected a list: {items!r}")

        loop_var = task.loop_var
        index_var = task.loop_control.get('index_var')
        pause = float(task.loop_control.get('pause') or 0)

        item_results: List[TaskResult] = []
        for index, item in enumerate(items):
            loop_vars = {
                loop_var: item,
                'stagehand_loop': {
                    'index': index + 1,
                    'index0': index,
                    'first': index == 0,
                    'last': index == len(items) - 1,
                    'length': len(items),
                },
            }
            if index_var:
                loop_vars[index_var] = index
            item_scope = scope.with_layer(Layer.TASK, loop_vars)

            try:
                item_result = await self._run_with_retries(task, state, item_scope)
            except RenderError as e:
                item_result = TaskResult(state.name, task.display_name, TaskStatus.FAILED, msg=str(e))
            item_result.results[loop_var] = item
            item_result.item = item
            item_results.append(item_result.finish())

            if pause and index < len(items) - 1:
                await asyncio.sleep(pause)

        return self._combine(task, state, item_results)

    def _combine(self, task: Task, state: HostRunState, item_results: List[TaskResult]) -> TaskResult:
        failed = [r for r in item_results if r.failed]
        changed = any(r.changed for r in item_results)

        if failed:
            status = TaskStatus.FAILED
            msg = failed[0].msg or "One or more items failed"
        elif item_results and all(r.skipped for r in item_results):
            status, msg = TaskStatus.SKIPPED, "All items skipped"
        elif not item_results:
            status, msg = TaskStatus.SKIPPED, "No items in the list"
        else:
            status = TaskStatus.CHANGED if changed else TaskStatus.OK
            msg = "All items completed"

        return TaskResult(
            host=state.name,
            task_name=task.display_name,
            status=status,
            changed=changed,
            msg=msg,
            loop_results=item_results,
            attempts=max((r.attempts for r in item_results), default=1),
        )

    async def _execute_once(self, task: Task, state: HostRunState, scope: ScopeStack) -> TaskResult:
        """
        One attempt: render, dispatch, classify.

        Raises:
            RenderError: Arguments or predicates could not be rendered
            UnreachableError: The host could not be reached
        """
        args = self.templar.render_recursive(task.args, scope)
        environment = self.templar.render_recursive({**self.environment, **task.environment}, scope)

        module_class = get_module(task.module)
        if module_class is None:
            return TaskResult(state.name, task.display_name, TaskStatus.FAILED,
                              msg=f"Unknown action: {task.module}")

        check_mode = self.check_mode if task.check_mode is None else bool(task.check_mode)
        timeout = self._timeout(task, scope)
        context = ModuleContext(
            host=state.host,
            variables=scope,
            check_mode=check_mode,
            timeout=timeout,
            environment={str(k): str(v) for k, v in environment.items()},
            base_dir=self.base_dir,
            verbosity=self.verbosity,
            connector=lambda: self._connection(state),
        )
        module = module_class(args, context)

        error = module.validate_args()
        if error:
            return TaskResult(state.name, task.display_name, TaskStatus.FAILED, msg=error)

        try:
            outcome = module.check() if check_mode else module.run()
            module_result = await asyncio.wait_for(outcome, timeout=timeout)
        except (UnreachableError, RenderError):
            raise
        except asyncio.TimeoutError:
            return TaskResult(state.name, task.display_name, TaskStatus.FAILED,
                              msg=f"Task timed out after {timeout}s")
        except TimeoutError as e:
            return TaskResult(state.name, task.display_name, TaskStatus.FAILED, msg=e.message)
        except (StagehandError, OSError) as e:
            return TaskResult(state.name, task.display_name, TaskStatus.FAILED, msg=str(e))

        result = module_result.to_task_result(state.name, task.display_name)
        if result.status != TaskStatus.SKIPPED:
            self._classify(task, scope, result, module_result.failed)

        if module_result.facts and not result.failed:
            self.variable_manager.set_facts(state.name, scope, module_result.facts,
                                            cacheable=module_result.cacheable)
        return result

    def _timeout(self, task: Task, scope: ScopeStack) -> Optional[float]:
        value = self.templar.render(task.timeout, scope) if task.timeout is not None else None
        if value is None:
            value = get_config().command_timeout
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise RenderError(f"timeout must be a number, got {value!r}")

    def _result_scope(self, task: Task, scope: ScopeStack, result: TaskResult) -> ScopeStack:
        """Scope for failed_when/changed_when/until: the result and its fields."""
        registered = result.to_register()
        values = {
            'result': registered,
            'rc': result.rc,
            'stdout': result.stdout,
            'stderr': result.stderr,
            'msg': result.msg,
        }
        if task.register:
            values[task.register] = registered
        return scope.with_layer(Layer.FACTS, values)

    def _classify(self, task: Task, scope: ScopeStack, result: TaskResult, module_failed: bool) -> None:
        """
        Apply change and failure predicates.

        Without ``failed_when`` a task fails on ``rc != 0`` or when the action
        says so; with it, the predicate alone decides.
        """
        if task.changed_when is not None:
            result.changed = self.templar.evaluate_when(
                task.changed_when, self._result_scope(task, scope, result))

        if task.failed_when is not None:
            failed = self.templar.evaluate_when(
                task.failed_when, self._result_scope(task, scope, result))
        else:
            failed = module_failed or result.rc != 0

        if failed:
            result.status = TaskStatus.FAILED
        elif result.changed:
            result.status = TaskStatus.CHANGED
        else:
            result.status = TaskStatus.OK
