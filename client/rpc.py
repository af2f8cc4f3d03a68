"""
Solana JSON-RPC client over httpx. Thin layer converting RPC payloads to our
domain models. Transient faults (transport errors, 429/5xx, node-unhealthy
codes) raise TransientRpcError so callers can retry a bounded number of times.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import itertools
from typing import Awaitable, Callable, Protocol, Sequence, TypeVar

import httpx

from scanner.models import ProgramInteraction, SubmissionStatus, TransactionDetail

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
# Many providers reject larger JSON-RPC batches
DEFAULT_MAX_BATCH_SIZE = 100
# JSON-RPC error codes that mean "try again": node behind / unhealthy,
# blockhash not found, slot skipped.
_TRANSIENT_RPC_CODES = frozenset({-32002, -32004, -32005, -32007, -32014})
_CONFIRMED_LEVELS = frozenset({"confirmed", "finalized"})

T = TypeVar("T")


class RpcError(Exception):
    """JSON-RPC error response that retrying will not fix."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class TransientRpcError(Exception):
    """Network-level or overload fault. Safe to retry."""
    pass


class TransactionSource(Protocol):
    async def get_transaction(self, signature: str) -> TransactionDetail | None: ...

    async def get_transactions(self, signatures: Sequence[str]) -> list[TransactionDetail | None]: ...


class Submitter(Protocol):
    async def get_latest_blockhash(self) -> str: ...

    async def send_transaction(self, raw: bytes) -> str: ...

    async def confirm_transaction(self, signature: str, timeout_sec: float) -> SubmissionStatus: ...

    async def get_transaction_fee(self, signature: str) -> int | None: ...


async def retry_async(
    fn: Callable[..., Awaitable[T]],
    *args,
    attempts: int = 3,
    delay_sec: float = 0.5,
    **kwargs,
) -> T:
    """Call fn, retrying on TransientRpcError with exponential backoff."""
    for attempt in range(attempts):
        try:
            return await fn(*args, **kwargs)
        except TransientRpcError as exc:
            if attempt == attempts - 1:
                raise
            wait = delay_sec * (2 ** attempt)
            logger.debug("RPC retry %d/%d after %.2fs: %s", attempt + 1, attempts, wait, exc)
            await asyncio.sleep(wait)
    raise AssertionError("unreachable")


def parse_transaction(signature: str, payload: dict) -> TransactionDetail:
    """
    Convert a getTransaction result (encoding="json") into a TransactionDetail.
    Account indexes are resolved against the static keys followed by any
    addresses loaded from lookup tables. Inner instructions are included.
    """
    tx = payload.get("transaction") or {}
    message = tx.get("message") or {}
    meta = payload.get("meta") or {}

    keys: list[str] = list(message.get("accountKeys") or [])
    loaded = meta.get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])

    def _resolve(ix: dict, inner: bool) -> ProgramInteraction | None:
        try:
            program_id = keys[ix["programIdIndex"]]
            accounts = tuple(keys[i] for i in ix.get("accounts", []))
        except (KeyError, IndexError, TypeError):
            logger.debug("Unresolvable instruction in %s: %s", signature, ix)
            return None
        return ProgramInteraction(
            program_id=program_id,
            accounts=accounts,
            data=ix.get("data", ""),
            inner=inner,
        )

    interactions: list[ProgramInteraction] = []
    for ix in message.get("instructions") or []:
        resolved = _resolve(ix, inner=False)
        if resolved is not None:
            interactions.append(resolved)
    for group in meta.get("innerInstructions") or []:
        for ix in group.get("instructions") or []:
            resolved = _resolve(ix, inner=True)
            if resolved is not None:
                interactions.append(resolved)

    return TransactionDetail(
        signature=signature,
        slot=int(payload.get("slot", 0)),
        interactions=tuple(interactions),
        fee=int(meta.get("fee", 0) or 0),
        err=meta.get("err"),
        block_time=payload.get("blockTime"),
        log_messages=tuple(meta.get("logMessages") or ()),
    )


class SolanaRpc:
    """
    Async JSON-RPC client. Implements both TransactionSource (detail and bulk
    lookups for the feed monitor) and Submitter (blockhash, send, confirm).
    """

    def __init__(
        self,
        endpoint: str,
        commitment: str = "confirmed",
        timeout: float = DEFAULT_TIMEOUT,
        http: httpx.AsyncClient | None = None,
        poll_interval_sec: float = 0.5,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        self._endpoint = endpoint
        # getTransaction rejects "processed"
        self._commitment = "confirmed" if commitment == "processed" else commitment
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)
        self._poll_interval = poll_interval_sec
        self._max_batch_size = max(1, max_batch_size)

    async def close(self) -> None:
        await self._http.aclose()

    async def _post(self, body: dict | list) -> dict | list:
        try:
            resp = await self._http.post(self._endpoint, json=body)
        except httpx.TransportError as e:
            raise TransientRpcError(f"Transport error: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientRpcError(f"HTTP {resp.status_code} from {self._endpoint}")
        resp.raise_for_status()
        return resp.json()

    def _request(self, method: str, params: list) -> dict:
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    @staticmethod
    def _unwrap(reply: dict):
        err = reply.get("error")
        if err:
            code = int(err.get("code", 0))
            message = str(err.get("message", ""))
            if code in _TRANSIENT_RPC_CODES:
                raise TransientRpcError(f"RPC error {code}: {message}")
            raise RpcError(code, message)
        return reply.get("result")

    async def call(self, method: str, params: list):
        reply = await self._post(self._request(method, params))
        return self._unwrap(reply)

    def _tx_params(self, signature: str) -> list:
        return [
            signature,
            {
                "encoding": "json",
                "maxSupportedTransactionVersion": 0,
                "commitment": self._commitment,
            },
        ]

    # -- TransactionSource --

    async def get_transaction(self, signature: str) -> TransactionDetail | None:
        result = await self.call("getTransaction", self._tx_params(signature))
        if result is None:
            return None
        return parse_transaction(signature, result)

    async def get_transactions(self, signatures: Sequence[str]) -> list[TransactionDetail | None]:
        """Batched getTransaction, at most max_batch_size requests per call. Per-item errors become None."""
        details: list[TransactionDetail | None] = []
        for start in range(0, len(signatures), self._max_batch_size):
            details.extend(await self._get_transaction_batch(signatures[start:start + self._max_batch_size]))
        return details

    async def _get_transaction_batch(self, signatures: Sequence[str]) -> list[TransactionDetail | None]:
        requests = [self._request("getTransaction", self._tx_params(sig)) for sig in signatures]
        replies = await self._post(requests)
        if not isinstance(replies, list):
            raise RpcError(0, f"Expected batch reply, got {type(replies).__name__}")
        by_id = {reply.get("id"): reply for reply in replies}

        details: list[TransactionDetail | None] = []
        for sig, req in zip(signatures, requests):
            reply = by_id.get(req["id"])
            if reply is None or reply.get("error") or reply.get("result") is None:
                details.append(None)
                continue
            details.append(parse_transaction(sig, reply["result"]))
        return details

    # -- Submitter --

    async def get_latest_blockhash(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": self._commitment}])
        return result["value"]["blockhash"]

    async def send_transaction(self, raw: bytes) -> str:
        encoded = base64.b64encode(raw).decode("ascii")
        return await self.call(
            "sendTransaction",
            [
                encoded,
                {
                    "encoding": "base64",
                    "skipPreflight": True,
                    "preflightCommitment": "processed",
                    "maxRetries": 0,
                },
            ],
        )

    async def get_signature_status(self, signature: str) -> dict | None:
        result = await self.call(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": False}],
        )
        values = (result or {}).get("value") or [None]
        return values[0]

    async def confirm_transaction(self, signature: str, timeout_sec: float) -> SubmissionStatus:
        """Poll the signature status until confirmed, failed, or timed out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_sec
        while True:
            try:
                status = await self.get_signature_status(signature)
            except TransientRpcError as e:
                logger.debug("Status poll for %s failed: %s", signature, e)
                status = None
            if status is not None:
                if status.get("err") is not None:
                    return SubmissionStatus.FAILED
                if status.get("confirmationStatus") in _CONFIRMED_LEVELS:
                    return SubmissionStatus.CONFIRMED
            if loop.time() >= deadline:
                return SubmissionStatus.TIMEOUT
            await asyncio.sleep(self._poll_interval)

    async def get_transaction_fee(self, signature: str) -> int | None:
        """Fee in lamports actually charged for a landed transaction."""
        detail = await self.get_transaction(signature)
        return detail.fee if detail is not None else None
