"""Error taxonomy for traversal runs.

Every error raised while walking one path is captured into that path's result;
none of them escape the driver. `GraphDefinitionError` is the exception to the
rule: a malformed graph is rejected before any path starts.
"""

from typing import Any


class GraphDefinitionError(ValueError):
    """Raised when a state graph cannot be traversed at all."""


class EffectRejected(Exception):
    """Raised by a submitter when the external system refuses an operation."""

    def __init__(self, message: str, receipt: Any = None) -> None:
        super().__init__(message)
        self.receipt = receipt


class ConfirmationTimeout(Exception):
    """Raised by a submitter when an effect's outcome is not known in time.

    Unlike `EffectRejected` this says nothing about whether the external system
    accepted the operation.
    """


class TraversalError(Exception):
    """Base class for failures local to one traversal path."""

    kind = "TraversalError"

    def __init__(self, state: str, edge: str | None = None, cause: BaseException | None = None) -> None:
        self.state = state
        self.edge = edge
        self.cause = cause
        super().__init__(self._message())

    def _message(self) -> str:
        where = self.state if self.edge is None else f"{self.state} -> {self.edge}"
        if self.cause is None:
            return f"{self.kind} at {where}"
        return f"{self.kind} at {where}: {self.cause!r}"

    def details(self) -> dict[str, Any]:
        return {}


class DependencyResolutionError(TraversalError):
    kind = "DependencyResolutionError"

    def __init__(
        self,
        state: str,
        name: str,
        cause: BaseException,
        errors: dict[str, BaseException] | None = None,
    ) -> None:
        self.name = name
        self.errors = errors or {name: cause}
        super().__init__(state, None, cause)

    def _message(self) -> str:
        return f"{self.kind} at {self.state}: dependency {self.name!r} failed: {self.cause!r}"

    def details(self) -> dict[str, Any]:
        return {"name": self.name, "failed": {key: repr(exc) for key, exc in self.errors.items()}}


class PreconditionError(TraversalError):
    kind = "PreconditionError"


class TransitionError(TraversalError):
    """An effect failed to submit or confirm without being rejected by the system."""

    kind = "TransitionError"

    def __init__(self, state: str, edge: str, cause: BaseException, phase: str = "confirm") -> None:
        self.phase = phase
        super().__init__(state, edge, cause)

    def details(self) -> dict[str, Any]:
        return {"phase": self.phase}


class CheckFailure:
    """One mismatching assertion inside an expectation."""

    __slots__ = ("assertion", "expected", "actual")

    def __init__(self, assertion: str, expected: Any, actual: Any) -> None:
        self.assertion = assertion
        self.expected = expected
        self.actual = actual

    def __repr__(self) -> str:
        return f"CheckFailure({self.assertion!r}, expected={self.expected!r}, actual={self.actual!r})"


class ExpectationError(TraversalError):
    """The effect succeeded but one or more post-conditions did not hold."""

    kind = "ExpectationError"

    def __init__(self, state: str, edge: str, failures: list[CheckFailure]) -> None:
        if not failures:
            raise ValueError("ExpectationError requires at least one failure")
        self.failures = failures
        super().__init__(state, edge)

    @property
    def assertion(self) -> str:
        return self.failures[0].assertion

    @property
    def expected(self) -> Any:
        return self.failures[0].expected

    @property
    def actual(self) -> Any:
        return self.failures[0].actual

    def _message(self) -> str:
        first = self.failures[0]
        extra = f" (+{len(self.failures) - 1} more)" if len(self.failures) > 1 else ""
        return (
            f"{self.kind} at {self.state} -> {self.edge}: {first.assertion}: "
            f"expected {first.expected!r}, got {first.actual!r}{extra}"
        )

    def details(self) -> dict[str, Any]:
        return {
            "failures": [
                {"assertion": f.assertion, "expected": repr(f.expected), "actual": repr(f.actual)}
                for f in self.failures
            ]
        }


class UnexpectedSuccessError(TraversalError):
    """An invalid transition was accepted by the external system."""

    kind = "UnexpectedSuccessError"

    def __init__(self, state: str, label: str) -> None:
        self.label = label
        super().__init__(state, label)

    def _message(self) -> str:
        return f"{self.kind} at {self.state}: {self.label!r} should have been rejected"


class IsolationError(TraversalError):
    """Snapshot or revert of the external system failed around a branch."""

    kind = "IsolationError"

    def __init__(self, state: str, edge: str | None, cause: BaseException, phase: str) -> None:
        self.phase = phase
        super().__init__(state, edge, cause)

    def details(self) -> dict[str, Any]:
        return {"phase": self.phase}


class TraversalTimeoutError(TraversalError):
    kind = "TraversalTimeoutError"

    def __init__(self, state: str, edge: str | None, timeout: float | None) -> None:
        self.timeout = timeout
        super().__init__(state, edge)

    def _message(self) -> str:
        where = self.state if self.edge is None else f"{self.state} -> {self.edge}"
        return f"{self.kind} at {where}: run exceeded {self.timeout}s"

    def details(self) -> dict[str, Any]:
        return {"timeout": self.timeout}
