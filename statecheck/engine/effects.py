"""Effect submission boundary: receipts, the submitter protocol, and the gate.

The engine never looks inside an operation. A submitter turns an operation into
a pending effect and later into a `Receipt`, or raises `EffectRejected`.
"""

import asyncio
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from statecheck.common.logging import logger


class EventRecord(BaseModel):
    """One event-like record carried by a receipt."""

    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class Receipt(BaseModel):
    """Confirmation of a submitted operation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tx_hash: str = ""
    status: bool = True
    block_number: int | None = None
    events: list[EventRecord] = Field(default_factory=list)
    raw: Any = None

    def events_named(self, name: str) -> list[EventRecord]:
        return [event for event in self.events if event.name == name]


class EffectSubmitter(Protocol):
    """Opaque capability to the external system."""

    async def submit(self, operation: Any) -> Any:
        """Hand an operation to the external system and return a pending effect."""
        ...

    async def confirm(self, effect: Any) -> Receipt:
        """Wait for a pending effect to be confirmed."""
        ...


class StateIsolation(Protocol):
    """Snapshot/revert hooks for external systems whose state siblings share."""

    async def snapshot(self) -> Any:
        ...

    async def revert(self, snapshot_id: Any) -> None:
        ...


class SubmissionGate:
    """Serializes submissions from concurrently explored paths.

    Only one `submit` is in flight at a time so account-level ordering (nonces
    and the like) stays consistent. Confirmations are awaited outside the lock.
    """

    def __init__(self, submitter: EffectSubmitter) -> None:
        self.submitter = submitter
        self._lock = asyncio.Lock()
        self.submitted = 0

    async def submit(self, operation: Any) -> Any:
        async with self._lock:
            effect = await self.submitter.submit(operation)
            self.submitted += 1
            logger.debug("effect_submitted count=%s", self.submitted)
            return effect

    async def confirm(self, effect: Any) -> Receipt:
        receipt = await self.submitter.confirm(effect)
        if not isinstance(receipt, Receipt):
            raise TypeError(f"submitter returned {type(receipt).__name__}, expected Receipt")
        return receipt

    async def send(self, operation: Any) -> Receipt:
        """Submit and confirm in one call; used by setup steps inside preconditions."""

        return await self.confirm(await self.submit(operation))
