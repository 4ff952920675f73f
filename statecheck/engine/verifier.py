"""Post-condition checks for confirmed transitions.

An expectation returns a list of `Check` values instead of asserting inline, so
every mismatch in one transition can be reported together.
"""

import inspect
import operator
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from statecheck.common.logging import logger
from statecheck.engine.context import Context
from statecheck.engine.effects import Receipt
from statecheck.engine.errors import CheckFailure, ExpectationError
from statecheck.engine.executor import maybe_await
from statecheck.engine.graph import TransitionSpec


@dataclass(frozen=True)
class Check:
    """One assertion. `actual` may be a value, an awaitable, or a zero-arg callable."""

    assertion: str
    expected: Any
    actual: Any
    compare: Callable[[Any, Any], bool] = operator.eq


def expect_equal(assertion: str, actual: Any, expected: Any) -> Check:
    return Check(assertion, expected, actual)


def expect_event(receipt: Receipt, name: str, **fields: Any) -> Check:
    """Check that `receipt` carries an event `name` whose args include `fields`.

    When several events share the name, any one matching all fields passes;
    otherwise the first occurrence is shown as the actual value.
    """

    expected = {"event": name, **fields}
    candidates = receipt.events_named(name)
    if not candidates:
        return Check(f"event {name} emitted", expected, None)

    def view(event):
        return {"event": event.name, **{key: event.args.get(key) for key in fields}}

    for event in candidates:
        if view(event) == expected:
            return Check(f"event {name} emitted", expected, view(event))
    return Check(f"event {name} emitted", expected, view(candidates[0]))


def expect_no_event(receipt: Receipt, name: str) -> Check:
    return Check(f"event {name} not emitted", 0, len(receipt.events_named(name)))


def _flatten(checks: Any) -> Iterable[Check]:
    if checks is None:
        return
    if isinstance(checks, Check):
        yield checks
        return
    for item in checks:
        yield from _flatten(item)


async def evaluate_check(check: Check) -> CheckFailure | None:
    try:
        actual = check.actual
        if callable(actual) and not inspect.isawaitable(actual):
            actual = actual()
        actual = await maybe_await(actual)
    except Exception as exc:
        return CheckFailure(check.assertion, check.expected, exc)
    try:
        passed = bool(check.compare(actual, check.expected))
    except Exception as exc:
        return CheckFailure(check.assertion, check.expected, exc)
    if passed:
        return None
    return CheckFailure(check.assertion, check.expected, actual)


async def verify_expectation(
    state: str,
    edge: str,
    spec: TransitionSpec,
    context: Context,
    receipt: Receipt,
    next_context: Context,
) -> int:
    """Evaluate every check for one transition; return how many passed."""

    if spec.expectation is None:
        logger.info("expectation_missing state=%s edge=%s", state, edge)
        return 0

    try:
        checks = list(_flatten(await maybe_await(spec.expectation(context, receipt, next_context))))
    except Exception as exc:
        raise ExpectationError(state, edge, [CheckFailure("expectation evaluated", "no exception", exc)]) from exc

    failures = []
    for check in checks:
        failure = await evaluate_check(check)
        if failure is not None:
            failures.append(failure)

    if failures:
        for failure in failures:
            logger.warning(
                "expectation_mismatch state=%s edge=%s assertion=%s expected=%r actual=%r",
                state,
                edge,
                failure.assertion,
                failure.expected,
                failure.actual,
            )
        raise ExpectationError(state, edge, failures)
    return len(checks)
