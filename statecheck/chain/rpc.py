"""Ethereum JSON-RPC effect submitter.

Sends pre-encoded transactions from an unlocked node account and waits for
them to be mined and confirmed. Calldata encoding and event decoding stay with
the caller: logs are named through a `topic0 -> event name` table and keep
their raw topics/data as args.
"""

import asyncio
import itertools
from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import BaseModel

from statecheck.common.config import settings
from statecheck.common.logging import logger
from statecheck.common.metrics import rpc_retries_total
from statecheck.engine.effects import EventRecord, Receipt
from statecheck.engine.errors import ConfirmationTimeout, EffectRejected

# Methods that are safe to resend after a transport error.
_IDEMPOTENT_METHODS = {"eth_getTransactionReceipt", "eth_blockNumber", "eth_call", "eth_chainId"}


class TxRequest(BaseModel):
    """One transaction to submit."""

    sender: str
    to: str | None = None
    data: str = "0x"
    value: int = 0
    gas: int | None = None


class PendingTransaction(BaseModel):
    tx_hash: str
    request: TxRequest


class JsonRpcError(Exception):
    def __init__(self, method: str, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"{method} failed code={code} message={message}")
        self.method = method
        self.code = code
        self.message = message
        self.data = data


def _to_int(value: str | int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)


class JsonRpcSubmitter:
    """`EffectSubmitter` over an Ethereum node's HTTP JSON-RPC endpoint."""

    def __init__(
        self,
        url: str | None = None,
        event_names: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        confirmation_blocks: int | None = None,
        poll_interval: float | None = None,
        polling_timeout: float | None = None,
        default_gas: int | None = None,
        max_retries: int = 3,
    ) -> None:
        self.url = url or settings.eth_rpc_url
        self.event_names = {topic.lower(): name for topic, name in (event_names or {}).items()}
        self._client = client
        self._owns_client = client is None
        self.confirmation_blocks = settings.confirmation_blocks if confirmation_blocks is None else confirmation_blocks
        self.poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.polling_timeout = (
            settings.transaction_polling_timeout_seconds if polling_timeout is None else polling_timeout
        )
        self.default_gas = settings.default_gas if default_gas is None else default_gas
        self.max_retries = max_retries
        self._ids = itertools.count(1)

    async def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "JsonRpcSubmitter":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def call(self, method: str, params: list) -> Any:
        """Perform one JSON-RPC request, retrying transport errors for read-only methods."""

        client = await self.client()
        attempts = max(1, self.max_retries) if method in _IDEMPOTENT_METHODS else 1
        for attempt in range(1, attempts + 1):
            body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
            try:
                resp = await client.post(self.url, json=body)
                resp.raise_for_status()
                break
            except httpx.TransportError as exc:
                if attempt == attempts:
                    raise
                rpc_retries_total.labels(method=method).inc()
                logger.warning("rpc_retry method=%s attempt=%s error=%s", method, attempt, exc)
                await asyncio.sleep(min(2.0, 0.1 * (2 ** (attempt - 1))))

        payload = resp.json()
        error = payload.get("error")
        if error:
            raise JsonRpcError(method, error.get("code", 0), error.get("message", ""), error.get("data"))
        return payload.get("result")

    async def submit(self, operation: TxRequest) -> PendingTransaction:
        tx = {
            "from": operation.sender,
            "data": operation.data,
            "value": hex(operation.value),
            "gas": hex(operation.gas or self.default_gas),
        }
        if operation.to is not None:
            tx["to"] = operation.to
        try:
            tx_hash = await self.call("eth_sendTransaction", [tx])
        except JsonRpcError as exc:
            # Nodes refuse reverting calls at gas estimation time.
            raise EffectRejected(exc.message or str(exc)) from exc
        logger.info("tx_sent tx_hash=%s to=%s", tx_hash, operation.to)
        return PendingTransaction(tx_hash=tx_hash, request=operation)

    async def confirm(self, effect: PendingTransaction) -> Receipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.polling_timeout

        raw = None
        while raw is None:
            raw = await self.call("eth_getTransactionReceipt", [effect.tx_hash])
            if raw is None:
                if loop.time() >= deadline:
                    raise ConfirmationTimeout(f"transaction {effect.tx_hash} not mined within {self.polling_timeout}s")
                await asyncio.sleep(self.poll_interval)

        receipt = self.parse_receipt(raw)
        if not receipt.status:
            raise EffectRejected(f"transaction {effect.tx_hash} reverted", receipt)

        if self.confirmation_blocks > 1 and receipt.block_number is not None:
            target = receipt.block_number + self.confirmation_blocks - 1
            while _to_int(await self.call("eth_blockNumber", [])) < target:
                if loop.time() >= deadline:
                    # Mined and successful: too shallow, not refused.
                    raise ConfirmationTimeout(
                        f"transaction {effect.tx_hash} not confirmed by {self.confirmation_blocks} blocks"
                    )
                await asyncio.sleep(self.poll_interval)
        return receipt

    def parse_receipt(self, raw: dict) -> Receipt:
        events = []
        for log in raw.get("logs") or []:
            topics = log.get("topics") or []
            name = self.event_names.get(topics[0].lower(), "unknown") if topics else "unknown"
            events.append(
                EventRecord(
                    name=name,
                    args={"address": log.get("address"), "topics": topics, "data": log.get("data", "0x")},
                )
            )
        return Receipt(
            tx_hash=raw.get("transactionHash", ""),
            status=_to_int(raw.get("status", "0x1")) == 1,
            block_number=_to_int(raw.get("blockNumber")),
            events=events,
            raw=raw,
        )


class EvmSnapshots:
    """`StateIsolation` backed by the `evm_snapshot`/`evm_revert` dev-node RPCs.

    Ganache-style nodes drop a snapshot once it is reverted to, so every
    sibling branch takes its own.
    """

    def __init__(self, submitter: JsonRpcSubmitter) -> None:
        self.submitter = submitter

    async def snapshot(self) -> str:
        return await self.submitter.call("evm_snapshot", [])

    async def revert(self, snapshot_id: str) -> None:
        reverted = await self.submitter.call("evm_revert", [snapshot_id])
        if reverted is False:
            raise RuntimeError(f"evm_revert refused snapshot {snapshot_id}")
        logger.debug("evm_reverted snapshot_id=%s", snapshot_id)

    async def increase_time(self, seconds: int) -> None:
        """Move the dev chain clock forward and mine a block at the new time."""

        await self.submitter.call("evm_increaseTime", [int(seconds)])
        await self.submitter.call("evm_mine", [])
