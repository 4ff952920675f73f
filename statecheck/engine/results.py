"""Report records produced by the traversal driver."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

from statecheck.engine.errors import TraversalError


class Step(BaseModel):
    """One transition taken along a path."""

    model_config = ConfigDict(frozen=True)

    state: str
    edge: str
    successor: str


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    state: str
    edge: str | None = None
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, exc: TraversalError) -> "ErrorInfo":
        return cls(kind=exc.kind, state=exc.state, edge=exc.edge, message=str(exc), details=exc.details())


class TraversalResult(BaseModel):
    """Outcome of one root-to-leaf (or root-to-failure) path."""

    model_config = ConfigDict(frozen=True)

    path_id: str
    start_state: str
    steps: tuple[Step, ...] = ()
    status: Literal["completed", "failed", "timeout"]
    failed_step: int | None = None
    error: ErrorInfo | None = None
    revisited: str | None = None

    @computed_field
    @property
    def trail(self) -> list[str]:
        """State and edge names along the path, e.g. `["root", "toX", "X"]`.

        Edges named after their successor appear once.
        """

        names = [self.start_state]
        for step in self.steps:
            if step.edge != step.successor:
                names.append(step.edge)
            names.append(step.successor)
        return names

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class ProbeResult(BaseModel):
    """Outcome of one invalid-transition attempt."""

    model_config = ConfigDict(frozen=True)

    state: str
    label: str
    trail: tuple[Step, ...] = ()
    outcome: Literal["rejected", "unexpected_success", "error", "timeout"]
    rejection: str | None = None
    error: ErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == "rejected"


class RunReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    graph: str
    root: str
    run_id: str
    paths: tuple[TraversalResult, ...] = ()
    probes: tuple[ProbeResult, ...] = ()
    duration_seconds: float = 0.0
    warnings: tuple[str, ...] = ()

    @computed_field
    @property
    def passed(self) -> bool:
        return all(path.ok for path in self.paths) and all(probe.ok for probe in self.probes)

    def summary(self) -> dict[str, int]:
        counts = {
            "paths": len(self.paths),
            "paths_completed": sum(1 for p in self.paths if p.status == "completed"),
            "paths_failed": sum(1 for p in self.paths if p.status == "failed"),
            "paths_timeout": sum(1 for p in self.paths if p.status == "timeout"),
            "probes": len(self.probes),
            "probes_rejected": sum(1 for p in self.probes if p.outcome == "rejected"),
            "probes_failed": sum(1 for p in self.probes if p.outcome != "rejected"),
        }
        return counts

    def failures(self) -> list[ErrorInfo]:
        errors = [p.error for p in self.paths if p.error is not None]
        errors.extend(p.error for p in self.probes if p.error is not None)
        return errors
