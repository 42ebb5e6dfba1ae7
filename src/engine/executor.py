"""Apply engine: execute a plan against a ResourceProvider.

Changes run on a bounded worker pool as soon as every change they depend
on has been applied. The scheduling thread only waits on futures; all
provider calls happen on workers. Each successful operation is committed
to the state store before its dependents become eligible, so an
interrupted apply can always be resumed by planning again.
"""

import dataclasses
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Optional

from common import RetryPolicy, call_with_retry, format_duration
from config import EngineConfig
from engine.errors import (
    AmbiguousOutcomeError,
    ConfigurationError,
    EngineError,
)
from engine.evaluate import UNKNOWN, Evaluator, contains_unknown
from engine.plan import CREATE, DESTROY, NO_OP, UPDATE, Plan, PlannedChange, apply_ignore_changes
from engine.provider import ProviderResult, ResourceProvider, is_retryable
from engine.resolver import InstanceKey
from engine.state import APPLIED, FAILED, PENDING, SKIPPED, ChangeState, FileStateStore, StateRecord
from reporting.report import ApplyReport, ReportEntry

logger = logging.getLogger(__name__)

_PAST_TENSE = {CREATE: 'Created', UPDATE: 'Updated', DESTROY: 'Destroyed'}


def evaluate_outputs(plan: Plan, store: FileStateStore) -> dict[str, Any]:
    """Evaluate output expressions against committed state.

    Values of instances without a record evaluate to UNKNOWN.
    """
    if plan.resolved is None:
        return {}

    def lookup(key: InstanceKey) -> Any:
        record = store.get(key)
        if record is None or record.provider_id is None:
            return UNKNOWN
        return record.attributes

    evaluator = Evaluator(lookup, plan.data_values)
    return {name: evaluator.evaluate(value) for name, value in plan.resolved.outputs.items()}


class ApplyEngine:
    """Executes planned changes concurrently.

    Args:
        provider: Performs the operations
        store: Receives a commit per successful operation
        config: Concurrency, retry and deadline settings
        sleep: Backoff sleep (replaced in tests)
    """

    def __init__(self, provider: ResourceProvider, store: FileStateStore,
                 config: Optional[EngineConfig] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.provider = provider
        self.store = store
        self.config = config or EngineConfig()
        self.sleep = sleep
        self.policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            base_delay=self.config.backoff_base,
            max_delay=self.config.backoff_max,
        )

    def apply(self, plan: Plan, cancel_event: Optional[threading.Event] = None) -> ApplyReport:
        """Apply every change in the plan.

        Args:
            plan: Plan from Planner.plan()
            cancel_event: When set, no new changes are started

        Returns:
            ApplyReport with one entry per change, in plan order
        """
        report = ApplyReport(name=plan.declarations.name, destroy=plan.destroy,
                             started_at=datetime.now())
        states = {c.id: ChangeState(c.id) for c in plan.changes}
        for change in plan.changes:
            if change.kind == NO_OP:
                states[change.id].mark_no_op()

        run = _Run(plan, states)
        deadline = None
        if self.config.deadline_seconds is not None:
            deadline = time.monotonic() + float(self.config.deadline_seconds)

        logger.info(
            f"Applying '{plan.declarations.name}': {len(run.pending)} changes, "
            f"concurrency {self.config.concurrency}"
        )
        pool = ThreadPoolExecutor(max_workers=self.config.concurrency, thread_name_prefix='apply')
        try:
            while True:
                try:
                    if run.halted is None:
                        if cancel_event is not None and cancel_event.is_set():
                            run.halt('cancelled')
                        elif deadline is not None and time.monotonic() >= deadline:
                            run.halt(f"deadline of {self.config.deadline_seconds}s exceeded")
                    if run.halted is None:
                        run.propagate_skips()
                        self._schedule(run, pool)
                    if not run.running:
                        break
                    finished, _ = wait(list(run.running), timeout=self.config.poll_interval,
                                       return_when=FIRST_COMPLETED)
                    for future in finished:
                        self._collect(run, future)
                except KeyboardInterrupt:
                    logger.warning("Interrupted; waiting for in-flight operations to finish")
                    run.halt('interrupted')
        finally:
            pool.shutdown(wait=True)

        run.propagate_skips()
        for state in states.values():
            if state.status == PENDING:
                state.mark_not_started()

        report.entries = [
            ReportEntry(
                change_id=c.id,
                instance_key=str(c.instance_key),
                kind=c.kind,
                outcome=states[c.id].status,
                error=states[c.id].error,
                replace=c.replace,
                attempts=states[c.id].attempts,
                duration=states[c.id].duration or 0.0,
            )
            for c in plan.changes
        ]
        report.halted = run.halted
        report.fatal_error = run.fatal_error
        if report.success and not plan.destroy:
            report.outputs = evaluate_outputs(plan, self.store)
            report.sensitive_outputs = {o.name for o in plan.declarations.outputs if o.sensitive}
        report.finished_at = datetime.now()

        counts = report.counts()
        logger.info(
            f"Apply {'succeeded' if report.success else 'failed'} in "
            f"{format_duration(report.duration)}: "
            + ', '.join(f"{n} {outcome}" for outcome, n in sorted(counts.items()))
        )
        return report

    def _schedule(self, run: '_Run', pool: ThreadPoolExecutor) -> None:
        """Start ready changes in lexicographic instance-key order."""
        ready = [c for c in run.pending if run.is_ready(c)]
        ready.sort(key=lambda c: (c.instance_key.sort_key(), c.id))
        for change in ready:
            if len(run.running) >= self.config.concurrency:
                break
            state = run.states[change.id]
            state.start()
            logger.debug(f"[{change.kind}] Starting {change.instance_key}")
            run.running[pool.submit(self._execute, run.plan, change, state)] = change

    def _collect(self, run: '_Run', future: Future) -> None:
        change = run.running.pop(future)
        state = run.states[change.id]
        try:
            future.result()
        except AmbiguousOutcomeError as e:
            state.fail(str(e))
            logger.error(f"[{change.kind}] {change.instance_key}: outcome unknown, halting apply: {e}")
            run.fatal_error = f"{change.id}: {e}"
            run.halt('fatal error')
        except EngineError as e:
            state.fail(str(e))
            logger.error(f"[{change.kind}] {change.instance_key} failed: {e}")
        except Exception as e:
            state.fail(f"unexpected provider error: {e}")
            logger.exception(f"[{change.kind}] {change.instance_key} failed unexpectedly")
        else:
            state.complete()
            verb = 'Replaced' if change.replace and change.kind == CREATE else _PAST_TENSE[change.kind]
            logger.info(f"[{change.kind}] {verb} {change.instance_key} "
                        f"({format_duration(state.duration or 0.0)})")

    def _execute(self, plan: Plan, change: PlannedChange, state: ChangeState) -> None:
        """Run one change on a worker thread: evaluate, call provider, commit."""
        request = self._prepare(plan, change)

        def attempt() -> ProviderResult:
            state.attempts += 1
            return self.provider.execute(request)

        result = call_with_retry(
            attempt, self.policy, is_retryable,
            description=f"[{change.kind}] {change.instance_key}",
            sleep=self.sleep,
        )
        self._commit(request, result)

    def _prepare(self, plan: Plan, change: PlannedChange) -> PlannedChange:
        """Re-evaluate desired attributes against committed state."""
        if change.kind == DESTROY or change.instance is None:
            return change

        def lookup(key: InstanceKey) -> Any:
            record = self.store.get(key)
            if record is None or record.provider_id is None:
                return UNKNOWN
            return record.attributes

        desired = Evaluator(lookup, plan.data_values).evaluate_attributes(change.instance.attributes)
        if change.kind == UPDATE:
            current = self.store.get(change.instance_key)
            if current is not None:
                desired = apply_ignore_changes(
                    desired, current.config, change.instance.declaration.lifecycle.ignore_changes)
        unknown = sorted(name for name, value in desired.items() if contains_unknown(value))
        if unknown:
            raise ConfigurationError(
                f"{change.instance_key}: {', '.join(unknown)} still unknown after dependencies were applied"
            )
        return dataclasses.replace(change, desired_attributes=desired)

    def _commit(self, change: PlannedChange, result: ProviderResult) -> None:
        key = change.instance_key
        if change.kind == DESTROY:
            if not self.store.compare_and_delete(key, change.provider_id):
                self.store.remove_deposed(key, change.provider_id)  # type: ignore[arg-type]
            return

        current = self.store.get(key)
        deposed = list(current.deposed) if current else []
        attributes = dict(current.attributes) if current and change.kind == UPDATE else {}
        provider_id = result.provider_id
        if change.kind == UPDATE and provider_id is None:
            provider_id = change.provider_id
        if (change.kind == CREATE and current is not None and current.provider_id
                and current.provider_id != provider_id):
            # Old object stays until its destroy change runs
            deposed.append(current.provider_id)

        attributes.update(change.desired_attributes)
        attributes.update(result.attributes)
        self.store.put(StateRecord(
            key=key,
            resource_type=change.resource_type,
            provider_id=provider_id,
            attributes=attributes,
            config=dict(change.desired_attributes),
            dependencies=sorted(change.instance.dependencies, key=InstanceKey.sort_key)
            if change.instance else [],
            last_applied_at=time.time(),
            deposed=deposed,
        ))


class _Run:
    """Mutable bookkeeping for one apply; touched only by the scheduling thread."""

    def __init__(self, plan: Plan, states: dict[str, ChangeState]):
        self.plan = plan
        self.states = states
        self.pending = [c for c in plan.changes if c.kind != NO_OP]
        self.running: dict[Future, PlannedChange] = {}
        self.halted: Optional[str] = None
        self.fatal_error: Optional[str] = None

    def halt(self, reason: str) -> None:
        if self.halted is None:
            logger.warning(f"Apply halted ({reason}); no further changes will be started")
            self.halted = reason

    def is_ready(self, change: PlannedChange) -> bool:
        if self.states[change.id].status != PENDING:
            return False
        return all(self.states[dep].status in (APPLIED, NO_OP) for dep in change.depends_on)

    def propagate_skips(self) -> None:
        """Skip pending changes whose dependencies failed or were skipped.

        Plan order is topological, so one pass reaches transitive dependents.
        """
        for change in self.pending:
            state = self.states[change.id]
            if state.status != PENDING:
                continue
            for dep in sorted(change.depends_on):
                dep_status = self.states[dep].status
                if dep_status in (FAILED, SKIPPED):
                    state.skip(f"dependency {dep} {dep_status}")
                    logger.info(f"[{change.kind}] Skipping {change.instance_key}: dependency {dep} {dep_status}")
                    break
