"""
Converge Executor

Runs a ``RunPlan``. One async worker per host (bounded by ``forks``) walks the
host's units in order:

    pending -> evaluating-condition -> skipped
                                    -> running -> ok | changed | failed
                                    -> unreachable

A failure halts only the failing host for the rest of the play, unless the
run-wide fatal policy is on, in which case every worker stops dispatching.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from converge.connections.base import Escalation
from converge.engine.config import RunConfig
from converge.engine.errors import (
    ConnectivityError,
    ModuleExecutionError,
    PreconditionError,
    TaskTimeoutError,
    TemplateError,
)
from converge.engine.handlers import HandlerDispatcher
from converge.engine.inventory import Host, InventoryManager
from converge.engine.plan import ExecutionUnit, PlayPlan, RunPlan
from converge.engine.playbook import Play, Task
from converge.engine.remote import RemoteExecutor
from converge.engine.results import ModuleResult, ReportEntry, RunReport, TaskStatus, redact
from converge.engine.scope import VariableScope, collect_sensitive
from converge.engine.templating import TemplateEngine

logger = logging.getLogger(__name__)

HANDLER_INDEX = -2


class HostSession:
    """
    A host's connection for the length of a play.

    The connection opens on first use, is reused by every later unit, and is
    closed on exit. ``reset()`` drops it so the next unit reconnects.
    """

    def __init__(self, remote: RemoteExecutor, host: Host):
        self.remote = remote
        self.host = host
        self._connection: Any = None

    async def __aenter__(self) -> "HostSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    async def connection(self) -> Any:
        if self._connection is None:
            self._connection = await self.remote.open(self.host)
        return self._connection

    async def reset(self) -> None:
        await self.close()

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await self.remote.close(connection)
        except (ConnectivityError, OSError) as e:
            logger.warning("host=%s error while closing connection: %s", self.host.name, e)


@dataclass
class _HostRun:
    """Mutable per-host state, owned by that host's worker."""

    host: Host
    scope: VariableScope
    session: HostSession
    sensitive: Set[str] = field(default_factory=set)
    failed: bool = False
    unreachable: bool = False
    loop_results: Dict[int, List[Dict[str, Any]]] = field(default_factory=dict)

    @property
    def halted(self) -> bool:
        return self.failed or self.unreachable


class Executor:
    """Executes a run plan against hosts through a ``RemoteExecutor``."""

    def __init__(
        self,
        remote: RemoteExecutor,
        inventory: InventoryManager,
        config: Optional[RunConfig] = None,
        report: Optional[RunReport] = None,
        handlers: Optional[HandlerDispatcher] = None,
        templar: Optional[TemplateEngine] = None,
        display: Any = None,
    ):
        self.remote = remote
        self.inventory = inventory
        self.config = config or RunConfig()
        self.report = report or RunReport()
        self.handlers = handlers or HandlerDispatcher()
        self.templar = templar or TemplateEngine(self.config.variable_start, self.config.variable_end)
        self.display = display
        # Registered results and facts survive from play to play
        self._registered: Dict[str, Dict[str, Any]] = {}
        self._cancel: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    async def run(self, plan: RunPlan) -> RunReport:
        self._cancel = asyncio.Event()
        for host in plan.hosts:
            self.report.add_host(host.name)

        for play_plan in plan.plays:
            if self.cancelled:
                logger.info("run cancelled, not starting play %r", play_plan.name)
                break
            await self.run_play(play_plan)
        return self.report

    async def run_play(self, play_plan: PlayPlan) -> None:
        if self._cancel is None:
            self._cancel = asyncio.Event()
        play = play_plan.play
        if self.display is not None:
            self.display.play_start(play.name)
        self.handlers.register(play_plan.handlers)

        semaphore = asyncio.Semaphore(self.config.forks)
        states = {host.name: self._host_run(play, host) for host in play_plan.hosts}

        async def worker(host: Host) -> None:
            async with semaphore:
                state = states[host.name]
                async with state.session:
                    await self._run_units(play_plan, state, play_plan.units_for(host))

        await asyncio.gather(*(worker(h) for h in play_plan.hosts))

        await self._flush_handlers(play_plan, states, semaphore)

    def _host_run(self, play: Play, host: Host) -> _HostRun:
        scope = self.inventory.base_scope(
            host,
            extra_vars=self.config.extra_vars,
            play_vars=self._play_vars(play),
            defaults=play.role_defaults,
        )
        registered = self._registered.get(host.name)
        if registered:
            scope = scope.with_layer('registered', registered)
        return _HostRun(
            host=host,
            scope=scope,
            session=HostSession(self.remote, host),
            sensitive=scope.sensitive_values(),
        )

    @staticmethod
    def _play_vars(play: Play) -> Dict[str, Any]:
        play_vars = dict(play.play_vars)
        if play.source is not None:
            play_vars.setdefault('playbook_dir', str(play.source.parent.resolve()))
        return play_vars

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    async def _run_units(self, play_plan: PlayPlan, state: _HostRun, units) -> None:
        first = True
        for unit in units:
            if self.cancelled:
                self._skip(play_plan, state, unit, 'cancelled', "run cancelled after a fatal failure")
                continue
            if state.halted:
                self._skip(play_plan, state, unit, 'host_failed', "host failed earlier in the play")
                continue
            if not first and self.config.settle_delay:
                await asyncio.sleep(self.config.settle_delay)
            first = False

            if unit.is_deferred:
                await self._run_deferred(play_plan, state, unit)
            else:
                await self._run_unit(play_plan, state, unit)

    async def _run_deferred(self, play_plan: PlayPlan, state: _HostRun, unit: ExecutionUnit) -> None:
        """Resolve a loop that needed run-time values, then run its items in place."""
        try:
            variables = self._unit_vars(state, unit)
            loop = unit.deferred_loop
            if isinstance(loop, str):
                items = self.templar.render(loop, variables)
            else:
                items = self.templar.render_recursive(loop, variables)
        except TemplateError as e:
            self._fail(play_plan, state, unit, 'template', e.message)
            return
        if not isinstance(items, (list, tuple)):
            self._fail(play_plan, state, unit, 'template',
                       f"Invalid data passed to 'loop', it requires a list, got {type(items).__name__}")
            return
        if not items:
            self._skip(play_plan, state, unit, 'empty_loop', "No items in the list")
            return
        await self._run_units(play_plan, state, unit.expand(items))

    def _unit_vars(self, state: _HostRun, unit: ExecutionUnit) -> Dict[str, Any]:
        variables = state.scope.flatten()
        if unit.task.vars:
            variables.update(self.templar.render_recursive(unit.task.vars, variables))
        return variables

    async def _run_unit(self, play_plan: PlayPlan, state: _HostRun, unit: ExecutionUnit) -> None:
        task = unit.task
        play = play_plan.play
        host = state.host

        # Loop layer: task vars, then the rendered item
        try:
            loop_layer = dict(self.templar.render_recursive(task.vars, state.scope.flatten())) if task.vars else {}
            if unit.is_loop_item:
                loop_vars = unit.loop_vars()
                loop_vars[task.loop_var] = self.templar.render_recursive(
                    unit.loop_item, {**state.scope.flatten(), **loop_layer}
                )
                loop_layer.update(loop_vars)
        except TemplateError as e:
            self._fail(play_plan, state, unit, 'template', e.message)
            return
        unit_scope = state.scope.with_layer('loop', loop_layer) if loop_layer else state.scope
        variables = unit_scope.flatten()

        # Condition
        try:
            proceed = self.templar.evaluate_when(list(task.when), variables)
        except TemplateError as e:
            self._fail(play_plan, state, unit, 'template', e.message, halt=True)
            return
        if not proceed:
            result = ModuleResult(skipped=True, msg="Conditional result was False")
            self._register(state, unit, result)
            self._record(play_plan, state, unit, TaskStatus.SKIPPED, result, kind='conditional')
            return

        # Parameters
        try:
            params = self.templar.render_recursive(task.args, variables)
        except TemplateError as e:
            self._fail(play_plan, state, unit, 'template', e.message)
            return

        # Invoke
        check_mode = self._check_mode(play, task)
        escalate = self._escalation(play, task)
        timeout = task.timeout or self.config.task_timeout
        kind: Optional[str] = None
        try:
            connection = await state.session.connection()
            result = await asyncio.wait_for(
                self.remote.invoke(
                    connection,
                    task.module,
                    params,
                    escalate=escalate,
                    check_mode=check_mode,
                    variables=variables,
                    no_log=task.no_log,
                ),
                timeout=timeout,
            )
        except ConnectivityError as e:
            state.unreachable = True
            self._record(play_plan, state, unit, TaskStatus.UNREACHABLE, kind='unreachable', message=str(e))
            self._trip_fatal(play)
            return
        except asyncio.TimeoutError:
            await state.session.reset()
            error = TaskTimeoutError(host.name, task.display_name, timeout or 0)
            result = ModuleResult.failure(error.message)
            kind = 'timeout'
        except PreconditionError as e:
            result = ModuleResult.failure(e.message)
            kind = 'precondition'
        except ModuleExecutionError as e:
            fields = {'rc': e.rc} if e.rc is not None else {}
            if e.stderr:
                fields['stderr'] = e.stderr
            result = ModuleResult.failure(e.message, **fields)
            kind = 'module'
        except TemplateError as e:
            result = ModuleResult.failure(e.message)
            kind = 'template'
        except Exception as e:
            detail = "<hidden, no_log>" if task.no_log else redact(str(e), self._sensitive(state, unit))
            logger.error("host=%s task=%s module %s raised %s: %s",
                         host.name, task.display_name, task.module, type(e).__name__, detail)
            result = ModuleResult.failure(f"{type(e).__name__}: {e}")
            kind = 'module'

        # changed_when / failed_when
        if kind is None:
            try:
                result = self._apply_overrides(task, result, variables)
            except TemplateError as e:
                result = ModuleResult.failure(e.message, **dict(result.fields))
                kind = 'template'

        if unit.is_loop_item:
            result = result.evolve(fields={**result.fields, task.loop_var: loop_layer.get(task.loop_var)})

        # Register, facts, notify, record
        self._register(state, unit, result)
        if result.failed:
            ignored = task.ignore_errors
            self._record(play_plan, state, unit, TaskStatus.FAILED, result,
                         kind=kind or 'module', params=params, ignored=ignored)
            if not ignored:
                state.failed = True
                self._trip_fatal(play)
            return

        if result.skipped:
            self._record(play_plan, state, unit, TaskStatus.SKIPPED, result, kind='module', params=params)
            return

        facts = result.fields.get('ansible_facts')
        if isinstance(facts, dict) and facts:
            self._merge_facts(state, facts)

        if result.changed:
            for name in task.notify:
                self.handlers.notify(host.name, name)
        status = TaskStatus.CHANGED if result.changed else TaskStatus.OK
        self._record(play_plan, state, unit, status, result, params=params)

    def _check_mode(self, play: Play, task: Task) -> bool:
        if task.check_mode is not None:
            return bool(task.check_mode)
        if play.check_mode is not None:
            return bool(play.check_mode)
        return self.config.check_mode

    @staticmethod
    def _escalation(play: Play, task: Task) -> Optional[Escalation]:
        become = task.become if task.become is not None else play.become
        if not become:
            return None
        return Escalation(
            user=task.become_user or play.become_user,
            method=task.become_method or play.become_method,
        )

    def _apply_overrides(self, task: Task, result: ModuleResult, variables: Dict[str, Any]) -> ModuleResult:
        if task.changed_when is None and task.failed_when is None:
            return result
        registered = result.as_registered()
        scope = {**variables, 'result': registered}
        if task.register:
            scope[task.register] = registered
        if task.changed_when is not None:
            result = result.evolve(changed=self.templar.evaluate_when(task.changed_when, scope))
        if task.failed_when is not None:
            failed = self.templar.evaluate_when(task.failed_when, scope)
            msg = result.msg
            if failed and not result.failed and not msg:
                msg = "failed_when condition was true"
            result = result.evolve(failed=failed, msg=msg)
        return result

    def _register(self, state: _HostRun, unit: ExecutionUnit, result: ModuleResult) -> None:
        task = unit.task
        if not task.register:
            return
        value = result.as_registered()
        if unit.is_loop_item:
            value['ansible_loop_var'] = task.loop_var
            value[task.loop_var] = result.fields.get(task.loop_var, unit.loop_item)
            items = state.loop_results.setdefault(unit.task_index, [])
            if unit.loop_index == 0:
                items.clear()
            items.append(value)
            value = {
                'results': list(items),
                'changed': any(r.get('changed') for r in items),
                'failed': any(r.get('failed') for r in items),
                'skipped': all(r.get('skipped') for r in items),
                'msg': "All items completed",
            }
        self._set_registered(state, {task.register: value})

    def _merge_facts(self, state: _HostRun, facts: Dict[str, Any]) -> None:
        existing = dict(state.scope.layer('registered').get('ansible_facts') or {})
        existing.update(facts)
        self._set_registered(state, {**facts, 'ansible_facts': existing})

    def _set_registered(self, state: _HostRun, values: Dict[str, Any]) -> None:
        state.scope = state.scope.extend('registered', values)
        self._registered[state.host.name] = dict(state.scope.layer('registered'))

    def _trip_fatal(self, play: Play) -> None:
        if (self.config.any_errors_fatal or play.any_errors_fatal) and self._cancel is not None:
            if not self._cancel.is_set():
                logger.warning("fatal failure in play %r, cancelling remaining work", play.name)
            self._cancel.set()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _record(
        self,
        play_plan: PlayPlan,
        state: _HostRun,
        unit: ExecutionUnit,
        status: TaskStatus,
        result: Optional[ModuleResult] = None,
        *,
        kind: Optional[str] = None,
        message: Optional[str] = None,
        params: Any = None,
        ignored: bool = False,
    ) -> ReportEntry:
        entry = self.report.record(
            play_plan.play.name,
            state.host.name,
            unit.task.display_name,
            status,
            result,
            kind=kind,
            message=message,
            params=params,
            ignored=ignored,
            no_log=unit.task.no_log,
            sensitive=self._sensitive(state, unit),
        )
        self._show(entry)
        return entry

    @staticmethod
    def _sensitive(state: _HostRun, unit: ExecutionUnit) -> Set[str]:
        """Vault plaintexts visible to a unit: the host scope plus its own vars, args and item."""
        task = unit.task
        found = set(state.sensitive)
        for value in (task.vars, task.args, unit.loop_item):
            found |= collect_sensitive(value)
        return found

    def _show(self, entry: ReportEntry) -> None:
        if self.display is not None:
            self.display.task_result(entry)

    def _skip(self, play_plan: PlayPlan, state: _HostRun, unit: ExecutionUnit, kind: str, message: str) -> None:
        self._record(play_plan, state, unit, TaskStatus.SKIPPED, kind=kind, message=message)

    def _fail(
        self,
        play_plan: PlayPlan,
        state: _HostRun,
        unit: ExecutionUnit,
        kind: str,
        message: str,
        halt: bool = False,
    ) -> None:
        """Record a failure that happened before the module ran."""
        result = ModuleResult.failure(message)
        self._register(state, unit, result)
        ignored = unit.task.ignore_errors and not halt
        self._record(play_plan, state, unit, TaskStatus.FAILED, result, kind=kind, ignored=ignored)
        if not ignored:
            state.failed = True
            self._trip_fatal(play_plan.play)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _flush_handlers(
        self,
        play_plan: PlayPlan,
        states: Dict[str, _HostRun],
        semaphore: asyncio.Semaphore,
    ) -> None:
        force = self.config.force_handlers or play_plan.play.force_handlers
        runnable = []
        for host in play_plan.hosts:
            state = states[host.name]
            if self.cancelled or (state.halted and not force):
                self.handlers.discard(host.name)
                continue
            handlers = self.handlers.flush(host.name)
            if handlers:
                runnable.append((state, handlers))

        if not runnable:
            return
        if self.display is not None:
            self.display.handlers_start()

        async def worker(state: _HostRun, handlers: List[Task]) -> None:
            async with semaphore:
                async with state.session:
                    while handlers:
                        # force_handlers: a failed host still runs its handlers
                        state.failed = False
                        units = [self._handler_unit(play_plan, state.host, h) for h in handlers]
                        await self._run_units(play_plan, state, units)
                        if self.cancelled or (state.halted and not force):
                            self.handlers.discard(state.host.name)
                            break
                        # Handlers may notify other handlers
                        handlers = self.handlers.flush(state.host.name)

        await asyncio.gather(*(worker(s, h) for s, h in runnable))

    @staticmethod
    def _handler_unit(play_plan: PlayPlan, host: Host, handler: Task) -> ExecutionUnit:
        if handler.has_loop:
            return ExecutionUnit(play_plan.index, host, handler, HANDLER_INDEX, deferred_loop=handler.loop)
        return ExecutionUnit(play_plan.index, host, handler, HANDLER_INDEX)
