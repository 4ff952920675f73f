"""Transition execution: precondition, action, submission, confirmation."""

import inspect
from dataclasses import dataclass
from typing import Any

from statecheck.common.logging import logger
from statecheck.engine.context import Context
from statecheck.engine.effects import Receipt, SubmissionGate
from statecheck.engine.errors import PreconditionError, TransitionError
from statecheck.engine.graph import Effect, TransitionSpec


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class TransitionOutcome:
    receipt: Receipt
    next_context: Context
    subject: Any = None


async def run_precondition(state: str, edge: str, spec: TransitionSpec, context: Context) -> None:
    """Run the optional setup hook; any failure is fatal to the caller's path."""

    if spec.precondition is None:
        return
    try:
        await maybe_await(spec.precondition(context))
    except Exception as exc:
        raise PreconditionError(state, edge, exc) from exc


async def build_effect(state: str, edge: str, spec: TransitionSpec, context: Context) -> Effect:
    try:
        effect = await maybe_await(spec.action(context))
    except Exception as exc:
        raise TransitionError(state, edge, exc, phase="action") from exc
    if not isinstance(effect, Effect):
        raise TransitionError(
            state,
            edge,
            TypeError(f"action returned {type(effect).__name__}, expected Effect"),
            phase="action",
        )
    return effect


class TransitionExecutor:
    """Drives one valid edge to a confirmed receipt and the successor context."""

    def __init__(self, gate: SubmissionGate) -> None:
        self.gate = gate

    async def submit_and_confirm(self, state: str, edge: str, effect: Effect) -> Receipt:
        try:
            pending = await self.gate.submit(effect.operation)
        except Exception as exc:
            raise TransitionError(state, edge, exc, phase="submit") from exc
        try:
            return await self.gate.confirm(pending)
        except Exception as exc:
            raise TransitionError(state, edge, exc, phase="confirm") from exc

    async def execute(
        self,
        state: str,
        edge: str,
        spec: TransitionSpec,
        context: Context,
        successor: str | None = None,
    ) -> TransitionOutcome:
        successor = successor or edge
        await run_precondition(state, edge, spec, context)
        effect = await build_effect(state, edge, spec, context)
        if effect.declared_state is not None and effect.declared_state != successor:
            # The graph key wins; the action's own label is advisory.
            logger.warning(
                "declared_state_mismatch state=%s edge=%s successor=%s declared=%s",
                state,
                edge,
                successor,
                effect.declared_state,
            )

        receipt = await self.submit_and_confirm(state, edge, effect)

        produced = {}
        subject = None
        if effect.resolve_subject is not None:
            try:
                subject = await maybe_await(effect.resolve_subject(context, receipt))
            except Exception as exc:
                raise TransitionError(state, edge, exc, phase="resolve") from exc
            produced[effect.subject_key] = subject

        logger.info("transition_confirmed state=%s edge=%s tx_hash=%s", state, edge, receipt.tx_hash)
        return TransitionOutcome(
            receipt=receipt,
            next_context=context.extend(produced, state=successor),
            subject=subject,
        )
