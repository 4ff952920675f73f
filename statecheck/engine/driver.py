"""Graph traversal driver.

Walks every reachable path from the graph root depth-first. At each node the
driver resolves dependencies, then forks one task per valid transition and one
per invalid-transition probe. Each task owns its context, so a failing branch
only ends its own path.
"""

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from opentelemetry.trace import Status, StatusCode

from statecheck.common.logging import logger, path_id_ctx, run_id_ctx, state_name_ctx
from statecheck.common.metrics import (
    dependency_failures_total,
    paths_total,
    probes_total,
    step_seconds,
    transitions_total,
)
from statecheck.common.tracing import get_tracer
from statecheck.engine.context import Context, empty_context
from statecheck.engine.effects import EffectSubmitter, StateIsolation, SubmissionGate
from statecheck.engine.errors import (
    DependencyResolutionError,
    IsolationError,
    TraversalError,
    TraversalTimeoutError,
)
from statecheck.engine.executor import TransitionExecutor
from statecheck.engine.graph import StateGraph, TransitionSpec
from statecheck.engine.prober import FailurePathProber
from statecheck.engine.resolver import resolve_dependencies
from statecheck.engine.results import ErrorInfo, ProbeResult, RunReport, Step, TraversalResult
from statecheck.engine.verifier import verify_expectation


@dataclass(frozen=True)
class _Pending:
    kind: str
    state: str
    edge: str | None
    steps: tuple[Step, ...]


def _sort_key(unit_id: str) -> tuple:
    head, _, label = unit_id.partition("!")
    return tuple(int(part) for part in head.split(".")), label


class TraversalDriver:
    """Explores a `StateGraph` against an external system through one submitter."""

    def __init__(
        self,
        graph: StateGraph,
        submitter: EffectSubmitter,
        fixtures: Mapping[str, Any] | None = None,
        max_concurrency: int | None = None,
        isolation: StateIsolation | None = None,
    ) -> None:
        self.graph = graph
        self.gate = SubmissionGate(submitter)
        self.executor = TransitionExecutor(self.gate)
        self.prober = FailurePathProber(self.gate)
        self.fixtures = dict(fixtures or {})
        self.fixtures.setdefault("send", self.gate.send)
        self.isolation = isolation
        self.max_concurrency = max_concurrency
        self._tracer = get_tracer()
        self._reset()

    def _reset(self) -> None:
        self._paths: dict[str, TraversalResult] = {}
        self._probes: dict[str, ProbeResult] = {}
        self._pending: dict[str, _Pending] = {}
        self._warnings: list[str] = []
        self._semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

    async def run(self, timeout: float | None = None) -> RunReport:
        """Traverse the whole graph and return the per-path report."""

        self._reset()
        run_id = uuid4().hex[:12]
        run_token = run_id_ctx.set(run_id)
        started = time.perf_counter()
        logger.info("run_started graph=%s root=%s timeout=%s", self.graph.name, self.graph.root, timeout)
        try:
            root_id = "0"
            self._pending[root_id] = _Pending("path", self.graph.root, None, ())
            root_context = empty_context(self.graph.root, self.fixtures)
            try:
                # Own task so per-path context vars never leak into the caller.
                walk = asyncio.ensure_future(
                    self._guarded(root_id, self._visit(self.graph.root, root_context, (), root_id))
                )
                await asyncio.wait_for(walk, timeout)
            except asyncio.TimeoutError:
                self._record_timeouts(timeout)

            report = RunReport(
                graph=self.graph.name,
                root=self.graph.root,
                run_id=run_id,
                paths=tuple(self._paths[key] for key in sorted(self._paths, key=_sort_key)),
                probes=tuple(self._probes[key] for key in sorted(self._probes, key=_sort_key)),
                duration_seconds=time.perf_counter() - started,
                warnings=tuple(self.graph.warnings) + tuple(self._warnings),
            )
            logger.info("run_finished graph=%s passed=%s summary=%s", self.graph.name, report.passed, report.summary())
            return report
        finally:
            run_id_ctx.reset(run_token)

    async def _visit(self, state: str, context: Context, steps: tuple[Step, ...], path_id: str) -> None:
        path_id_ctx.set(path_id)
        state_name_ctx.set(state)
        self._pending[path_id] = _Pending("path", state, None, steps)
        node = self.graph.node_for(state)

        started = time.perf_counter()
        try:
            context = await resolve_dependencies(state, node.dependencies, context.extend(state=state))
        except DependencyResolutionError as exc:
            dependency_failures_total.labels(graph=self.graph.name, state=state).inc(len(exc.errors))
            self._record_path(path_id, steps, "failed", error=exc)
            return
        finally:
            step_seconds.labels(graph=self.graph.name, phase="dependencies").observe(time.perf_counter() - started)

        if node.is_terminal:
            self._record_path(path_id, steps, "completed")
            return

        del self._pending[path_id]
        branches = []
        for index, (successor, spec) in enumerate(node.transitions.items()):
            edge = spec.label or successor
            child_id = f"{path_id}.{index}"
            self._pending[child_id] = _Pending("path", state, edge, steps)
            branch = self._branch(state, edge, successor, spec, context.fork(), steps, child_id)
            branches.append((child_id, branch))
        for label, spec in node.invalid_transitions.items():
            probe_id = f"{path_id}!{label}"
            self._pending[probe_id] = _Pending("probe", state, label, steps)
            branches.append((probe_id, self._probe(state, label, spec, context.fork(), steps, probe_id)))

        if self.isolation is not None:
            await self._run_isolated(branches)
            return

        await asyncio.gather(*(self._guarded(unit_id, branch) for unit_id, branch in branches))

    async def _run_isolated(self, branches: list) -> None:
        """Run siblings one at a time, each from the same external snapshot."""

        remaining = list(branches)
        try:
            while remaining:
                unit_id, branch = remaining.pop(0)
                try:
                    snapshot_id = await self.isolation.snapshot()
                except Exception as exc:
                    branch.close()
                    logger.error("snapshot_failed unit=%s error=%s", unit_id, exc)
                    self._fail_units(unit_id, exc, phase="snapshot")
                    continue
                try:
                    await self._guarded(unit_id, branch)
                finally:
                    revert_error = await self._revert(snapshot_id)
                if revert_error is not None:
                    # External state is no longer the snapshot the siblings expect.
                    for pending_id, pending_branch in remaining:
                        pending_branch.close()
                        self._fail_units(pending_id, revert_error, phase="revert")
                    remaining = []
        finally:
            for _, branch in remaining:
                branch.close()

    async def _revert(self, snapshot_id) -> Exception | None:
        try:
            await self.isolation.revert(snapshot_id)
        except Exception as exc:
            logger.error("revert_failed snapshot_id=%s error=%s", snapshot_id, exc)
            self._warnings.append(f"revert_failed snapshot_id={snapshot_id} error={exc}")
            return exc
        return None

    async def _guarded(self, unit_id: str, work) -> None:
        """Await one unit of work; an unexpected failure ends only that unit."""

        try:
            await work
        except Exception as exc:
            logger.exception("unit_crashed unit=%s error=%s", unit_id, exc)
            self._fail_units(unit_id, exc)

    async def _branch(
        self,
        state: str,
        edge: str,
        successor: str,
        spec: TransitionSpec,
        context: Context,
        steps: tuple[Step, ...],
        path_id: str,
    ) -> None:
        path_id_ctx.set(path_id)
        state_name_ctx.set(state)
        started = time.perf_counter()
        with self._tracer.start_as_current_span(
            "statecheck.transition",
            attributes={"statecheck.state": state, "statecheck.edge": edge, "statecheck.successor": successor},
        ) as span:
            try:
                async with self._slot():
                    outcome = await self.executor.execute(state, edge, spec, context, successor)
                    await verify_expectation(state, edge, spec, context, outcome.receipt, outcome.next_context)
            except TraversalError as exc:
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                transitions_total.labels(graph=self.graph.name, outcome=exc.kind).inc()
                self._record_path(path_id, steps, "failed", error=exc)
                return
            finally:
                step_seconds.labels(graph=self.graph.name, phase="transition").observe(time.perf_counter() - started)
        transitions_total.labels(graph=self.graph.name, outcome="confirmed").inc()

        taken = steps + (Step(state=state, edge=edge, successor=successor),)
        on_path = {self.graph.root} | {step.successor for step in steps}
        if successor in on_path:
            logger.info("path_revisits_state state=%s successor=%s", state, successor)
            self._record_path(path_id, taken, "completed", revisited=successor)
            return
        await self._visit(successor, outcome.next_context, taken, path_id)

    async def _probe(
        self,
        state: str,
        label: str,
        spec: TransitionSpec,
        context: Context,
        steps: tuple[Step, ...],
        probe_id: str,
    ) -> None:
        path_id_ctx.set(probe_id)
        state_name_ctx.set(state)
        started = time.perf_counter()
        with self._tracer.start_as_current_span(
            "statecheck.probe",
            attributes={"statecheck.state": state, "statecheck.label": label},
        ) as span:
            async with self._slot():
                result = await self.prober.probe(state, label, spec, context, steps)
            if not result.ok:
                span.set_status(Status(StatusCode.ERROR, result.outcome))
        step_seconds.labels(graph=self.graph.name, phase="probe").observe(time.perf_counter() - started)
        probes_total.labels(graph=self.graph.name, outcome=result.outcome).inc()
        self._pending.pop(probe_id, None)
        self._probes[probe_id] = result

    def _slot(self):
        if self._semaphore is None:
            return _NoSlot()
        return self._semaphore

    def _record_path(
        self,
        path_id: str,
        steps: tuple[Step, ...],
        status: str,
        error: TraversalError | None = None,
        revisited: str | None = None,
    ) -> None:
        self._pending.pop(path_id, None)
        result = TraversalResult(
            path_id=path_id,
            start_state=self.graph.root,
            steps=steps,
            status=status,
            failed_step=len(steps) if error is not None else None,
            error=ErrorInfo.from_error(error) if error is not None else None,
            revisited=revisited,
        )
        self._paths[path_id] = result
        paths_total.labels(graph=self.graph.name, status=status).inc()
        if error is None:
            logger.info("path_completed trail=%s", result.trail)
        else:
            logger.warning("path_failed trail=%s error=%s", result.trail, error)

    def _record_pending(self, unit_id: str, pending: _Pending, status: str, error: TraversalError) -> None:
        if pending.kind == "path":
            self._record_path(unit_id, pending.steps, status, error=error)
            return
        outcome = "timeout" if status == "timeout" else "error"
        self._pending.pop(unit_id, None)
        self._probes[unit_id] = ProbeResult(
            state=pending.state,
            label=pending.edge or "",
            trail=pending.steps,
            outcome=outcome,
            error=ErrorInfo.from_error(error),
        )
        probes_total.labels(graph=self.graph.name, outcome=outcome).inc()

    def _fail_units(self, unit_id: str, cause: BaseException, phase: str | None = None) -> None:
        """Fail `unit_id` and every unit below it that has not concluded yet."""

        below = (f"{unit_id}.", f"{unit_id}!")
        for key in sorted(k for k in self._pending if k == unit_id or k.startswith(below)):
            pending = self._pending[key]
            if phase is None:
                error = TraversalError(pending.state, pending.edge, cause)
            else:
                error = IsolationError(pending.state, pending.edge, cause, phase)
            self._record_pending(key, pending, "failed", error)

    def _record_timeouts(self, timeout: float | None) -> None:
        for unit_id, pending in sorted(self._pending.items()):
            error = TraversalTimeoutError(pending.state, pending.edge, timeout)
            self._record_pending(unit_id, pending, "timeout", error)
        self._pending.clear()


class _NoSlot:
    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, *exc_info) -> bool:
        return False
