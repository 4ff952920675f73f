"""Failure-path probing: invalid transitions must be rejected."""

from statecheck.common.logging import logger
from statecheck.engine.context import Context
from statecheck.engine.effects import SubmissionGate
from statecheck.engine.errors import EffectRejected, TransitionError, TraversalError, UnexpectedSuccessError
from statecheck.engine.executor import build_effect, run_precondition
from statecheck.engine.graph import TransitionSpec
from statecheck.engine.results import ErrorInfo, ProbeResult, Step


def _inconclusive(state: str, label: str, trail: tuple[Step, ...], error: TraversalError) -> ProbeResult:
    return ProbeResult(state=state, label=label, trail=trail, outcome="error", error=ErrorInfo.from_error(error))


class FailurePathProber:
    """Attempts an invalid transition on a forked context and expects rejection."""

    def __init__(self, gate: SubmissionGate) -> None:
        self.gate = gate

    async def probe(
        self,
        state: str,
        label: str,
        spec: TransitionSpec,
        context: Context,
        trail: tuple[Step, ...] = (),
    ) -> ProbeResult:
        forked = context.fork()
        try:
            await run_precondition(state, label, spec, forked)
            effect = await build_effect(state, label, spec, forked)
        except TraversalError as exc:
            logger.warning("probe_setup_failed state=%s label=%s error=%s", state, label, exc)
            return _inconclusive(state, label, trail, exc)

        phase = "submit"
        try:
            pending = await self.gate.submit(effect.operation)
            phase = "confirm"
            receipt = await self.gate.confirm(pending)
        except EffectRejected as exc:
            logger.info("probe_rejected state=%s label=%s reason=%s", state, label, exc)
            return ProbeResult(
                state=state,
                label=label,
                trail=trail,
                outcome="rejected",
                rejection=str(exc),
            )
        except Exception as exc:
            # Only EffectRejected counts as a rejection; timeouts are inconclusive.
            error = TransitionError(state, label, exc, phase=phase)
            logger.warning("probe_inconclusive state=%s label=%s error=%s", state, label, exc)
            return _inconclusive(state, label, trail, error)

        error = UnexpectedSuccessError(state, label)
        logger.error("probe_unexpected_success state=%s label=%s tx_hash=%s", state, label, receipt.tx_hash)
        return ProbeResult(
            state=state,
            label=label,
            trail=trail,
            outcome="unexpected_success",
            error=ErrorInfo.from_error(error),
        )
