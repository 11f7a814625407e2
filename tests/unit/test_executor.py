"""
Tests for the task executor: predicates, retries, loops, register,
notify, check mode and timeouts.
"""

import logging

import pytest

from stagehand.engine.executor import HostRunState, TaskExecutor
from stagehand.engine.inventory import InventoryManager
from stagehand.engine.playbook import Task
from stagehand.engine.results import TaskStatus
from stagehand.engine.variables import Layer, VariableManager


@pytest.fixture
def inventory():
    inventory = InventoryManager()
    inventory.add_host('web1', {'http_port': 8080}, group='webservers')
    inventory.reconcile()
    return inventory


@pytest.fixture
def variable_manager(inventory):
    return VariableManager(inventory)


def make_state(inventory, variable_manager, play_vars=None):
    host = inventory.get_host('web1')
    scope = variable_manager.host_stack(host, play_vars or {}, play_hosts=['web1'])
    return HostRunState(host=host, scope=scope)


def make_executor(variable_manager, factory, **kwargs):
    return TaskExecutor(variable_manager, connection_factory=factory, **kwargs)


class TestPredicates:
    """Tests for failed_when and changed_when."""

    @pytest.mark.asyncio
    async def test_nonzero_rc_fails(self, inventory, variable_manager, connection_factory):
        """A command with a non-zero rc fails by default."""
        connection_factory.respond('false', rc=1)
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'false'})

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert result.rc == 1

    @pytest.mark.asyncio
    async def test_failed_when_overrides_rc(self, inventory, variable_manager, connection_factory):
        """With failed_when the predicate alone decides."""
        connection_factory.respond('grep', rc=1)
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'grep x'},
                    failed_when='rc > 1')

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.CHANGED
        assert not result.failed

    @pytest.mark.asyncio
    async def test_failed_when_on_output(self, inventory, variable_manager, connection_factory):
        """failed_when sees the result under its register name and as ``result``."""
        connection_factory.respond('check', stdout='ERROR: disk full')
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'check'},
                    register='out', failed_when="'ERROR' in out.stdout and result.rc == 0")

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert state.scope['out']['failed'] is True

    @pytest.mark.asyncio
    async def test_changed_when_false(self, inventory, variable_manager, connection_factory):
        """changed_when: false reports ok."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'uptime'}, changed_when=False)

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.OK
        assert result.changed is False

    @pytest.mark.asyncio
    async def test_changed_when_expression(self, inventory, variable_manager, connection_factory):
        """changed_when can inspect stdout."""
        connection_factory.respond('apply', stdout='nothing to do')
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'apply'},
                    changed_when="'nothing to do' not in stdout")

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.OK


class TestRetries:
    """Tests for until/retries/delay."""

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, inventory, variable_manager, connection_factory):
        """A task that never meets until runs retries + 1 times and fails."""
        connection_factory.respond('probe', rc=1)
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'probe'},
                    until='result.rc == 0', retries=2, delay=0, failed_when=False)

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert result.attempts == 3
        assert connection_factory.commands('web1') == ['probe'] * 3

    @pytest.mark.asyncio
    async def test_until_met_on_second_attempt(self, inventory, variable_manager, connection_factory):
        """Retrying stops as soon as until holds."""
        connection_factory.respond('probe', rc=1, then=[(0, 'ready')])
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'probe'},
                    until="result.stdout == 'ready'", retries=5, register='probe_result')

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.ok
        assert result.attempts == 2
        assert state.scope['probe_result']['attempts'] == 2

    @pytest.mark.asyncio
    async def test_invalid_retries_fails_task(self, inventory, variable_manager, connection_factory):
        """Non-numeric retries fail the task instead of crashing."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'probe'},
                    until='false', retries='many')

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert 'retries' in result.msg


class TestLoops:
    """Tests for loop and loop_control."""

    @pytest.mark.asyncio
    async def test_loop_runs_each_item(self, inventory, variable_manager, connection_factory):
        """Each item gets its own run and result."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'echo {{ item }}'},
                    loop=['a', 'b', 'c'], register='echoes')

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert connection_factory.commands('web1') == ['echo a', 'echo b', 'echo c']
        assert [r.item for r in result.loop_results] == ['a', 'b', 'c']
        assert result.status == TaskStatus.CHANGED
        assert [r['item'] for r in state.scope['echoes']['results']] == ['a', 'b', 'c']

    @pytest.mark.asyncio
    async def test_loop_continues_after_failed_item(self, inventory, variable_manager, connection_factory):
        """Every item runs even when one fails; the task fails."""
        connection_factory.respond('echo b', rc=1)
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'echo {{ item }}'},
                    loop=['a', 'b', 'c'])

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert len(connection_factory.commands('web1')) == 3
        assert result.status == TaskStatus.FAILED
        assert [r.status for r in result.loop_results] == [
            TaskStatus.CHANGED, TaskStatus.FAILED, TaskStatus.CHANGED]

    @pytest.mark.asyncio
    async def test_loop_control(self, inventory, variable_manager, connection_factory):
        """loop_var and index_var rename the loop variables."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command',
                    args={'_raw_params': 'echo {{ idx }}-{{ pkg }}-{{ stagehand_loop.last }}'},
                    loop=['nginx', 'redis'],
                    loop_control={'loop_var': 'pkg', 'index_var': 'idx'})

        await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert connection_factory.commands('web1') == ['echo 0-nginx-False', 'echo 1-redis-True']

    @pytest.mark.asyncio
    async def test_loop_from_variable(self, inventory, variable_manager, connection_factory):
        """A templated loop expression yields the list."""
        state = make_state(inventory, variable_manager, {'packages': ['git', 'curl']})
        task = Task(name='t', module='command', args={'_raw_params': 'install {{ item }}'},
                    loop='{{ packages }}')

        await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert connection_factory.commands('web1') == ['install git', 'install curl']

    @pytest.mark.asyncio
    async def test_loop_over_string_fails(self, inventory, variable_manager, connection_factory):
        """Loop data must be a list."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'echo'}, loop='not-a-list')

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert 'expected a list' in result.msg

    @pytest.mark.asyncio
    async def test_empty_loop_skips(self, inventory, variable_manager, connection_factory):
        """An empty loop is skipped."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'echo'}, loop=[])

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.SKIPPED


class TestTaskOutcomes:
    """Tests for conditions, errors and side channels of a run."""

    @pytest.mark.asyncio
    async def test_when_false_skips_without_connecting(self, inventory, variable_manager, connection_factory):
        """A skipped task never opens the connection."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'echo'},
                    when=['http_port == 80'])

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.SKIPPED
        assert connection_factory.connections == {}

    @pytest.mark.asyncio
    async def test_ignore_errors_marks_result(self, inventory, variable_manager, connection_factory):
        """ignore_errors keeps the failed status but flags it ignored."""
        connection_factory.respond('false', rc=1)
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'false'}, ignore_errors=True)

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert result.ignored is True

    @pytest.mark.asyncio
    async def test_undefined_variable_fails_task(self, inventory, variable_manager, connection_factory):
        """Render errors become a failed result."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'echo {{ missing_var }}'})

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert 'missing_var' in result.msg
        assert connection_factory.commands('web1') == []

    @pytest.mark.asyncio
    async def test_unreachable(self, inventory, variable_manager, connection_factory):
        """Connection failures produce an unreachable result."""
        connection_factory.unreachable.add('web1')
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='ping', args={})

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.UNREACHABLE
        assert 'Connection refused' in result.msg

    @pytest.mark.asyncio
    async def test_unknown_action(self, inventory, variable_manager, connection_factory):
        """An action without a module fails cleanly."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='nonexistent', args={})

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert 'Unknown action' in result.msg

    @pytest.mark.asyncio
    async def test_register_stores_fields(self, inventory, variable_manager, connection_factory):
        """register exposes rc, stdout and stdout_lines."""
        connection_factory.respond('ls', stdout='a\nb')
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'ls'}, register='listing')

        await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        listing = state.scope['listing']
        assert listing['rc'] == 0
        assert listing['stdout_lines'] == ['a', 'b']
        assert listing['changed'] is True
        assert state.scope.defining_layer('listing') == Layer.FACTS

    @pytest.mark.asyncio
    async def test_register_skipped_result(self, inventory, variable_manager, connection_factory):
        """Skipped tasks still register."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'ls'},
                    register='listing', when=[False])

        await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert state.scope['listing']['skipped'] is True

    @pytest.mark.asyncio
    async def test_notify_marks_pending(self, inventory, variable_manager, connection_factory):
        """A changed result marks its handlers pending."""
        handlers = [Task(name='restart', module='command', args={'_raw_params': 'restart'})]
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'touch'}, notify=['restart'])

        executor = make_executor(variable_manager, connection_factory, handlers=handlers)
        await executor.run(task, state, state.scope)

        assert state.pending_handlers == {0}

    def test_notify_unknown_handler_warns(self, inventory, variable_manager, connection_factory, caplog):
        """Notifying an undefined handler is logged, not fatal."""
        state = make_state(inventory, variable_manager)
        executor = make_executor(variable_manager, connection_factory)

        with caplog.at_level(logging.WARNING):
            executor.notify(state, ['nope'])

        assert state.pending_handlers == set()
        assert "'nope' is not defined" in caplog.text

    @pytest.mark.asyncio
    async def test_check_mode_skips_commands(self, inventory, variable_manager, connection_factory):
        """Commands are not run in check mode."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'rm -rf /tmp/x'})

        executor = make_executor(variable_manager, connection_factory, check_mode=True)
        result = await executor.run(task, state, state.scope)

        assert result.status == TaskStatus.SKIPPED
        assert connection_factory.commands('web1') == []

    @pytest.mark.asyncio
    async def test_task_check_mode_false_overrides(self, inventory, variable_manager, connection_factory):
        """check_mode: false on a task runs it even under --check."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'uptime'}, check_mode=False)

        executor = make_executor(variable_manager, connection_factory, check_mode=True)
        await executor.run(task, state, state.scope)

        assert connection_factory.commands('web1') == ['uptime']

    @pytest.mark.asyncio
    async def test_environment_merged(self, inventory, variable_manager, connection_factory):
        """Play and task environments are rendered and merged, the task winning."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='shell', args={'_raw_params': 'env'},
                    environment={'PORT': '{{ http_port }}', 'MODE': 'task'})

        executor = make_executor(variable_manager, connection_factory,
                                 environment={'MODE': 'play', 'LANG': 'C'})
        await executor.run(task, state, state.scope)

        call = connection_factory.connections['web1'].calls[0]
        assert call['environment'] == {'PORT': '8080', 'MODE': 'task', 'LANG': 'C'}
        assert call['shell'] is True

    @pytest.mark.asyncio
    async def test_task_timeout(self, inventory, variable_manager, connection_factory):
        """A task over its timeout fails."""
        connection_factory.respond('slow', delay=5)
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='command', args={'_raw_params': 'slow'}, timeout=0.05)

        result = await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert result.status == TaskStatus.FAILED
        assert 'timed out' in result.msg

    @pytest.mark.asyncio
    async def test_set_fact_cacheable(self, inventory, variable_manager, connection_factory):
        """Cacheable facts reach the fact cache."""
        state = make_state(inventory, variable_manager)
        task = Task(name='t', module='set_fact', args={'release': 'v2', 'cacheable': True})

        await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert state.scope['release'] == 'v2'
        assert variable_manager.fact_cache.get('web1') == {'release': 'v2'}

    @pytest.mark.asyncio
    async def test_task_vars(self, inventory, variable_manager, connection_factory):
        """Task vars sit above play vars."""
        state = make_state(inventory, variable_manager, {'who': 'play'})
        task = Task(name='t', module='command', args={'_raw_params': 'echo {{ who }}'},
                    vars={'who': 'task'})

        await make_executor(variable_manager, connection_factory).run(task, state, state.scope)

        assert connection_factory.commands('web1') == ['echo task']
        assert 'who' not in state.scope.layer(Layer.TASK)
