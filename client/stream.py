"""
WebSocket activity stream. Subscribes to Solana logsSubscribe notifications
and yields one ActivityEvent per transaction. Fail-fast: raises after max
reconnect retries.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import AsyncIterator, Protocol

import websockets
from websockets.asyncio.client import connect

from scanner.models import ActivityEvent

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
BACKOFF_BASE = 1.0  # seconds
BACKOFF_MAX = 30.0


class ActivityStream(Protocol):
    def events(self) -> AsyncIterator[ActivityEvent]: ...


def subscription_requests(mentions: tuple[str, ...], commitment: str) -> list[dict]:
    """One logsSubscribe per mentioned program (the RPC accepts a single
    address per filter), or a single "all" subscription."""
    filters: list[object] = [{"mentions": [program]} for program in mentions] or ["all"]
    return [
        {
            "jsonrpc": "2.0",
            "id": i + 1,
            "method": "logsSubscribe",
            "params": [f, {"commitment": commitment}],
        }
        for i, f in enumerate(filters)
    ]


def parse_log_notification(raw: str | bytes) -> ActivityEvent | None:
    """Parse a logsNotification frame. Returns None for anything else
    (subscription acks, malformed frames)."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Unparseable stream message: %.200r", raw)
        return None
    if not isinstance(data, dict) or data.get("method") != "logsNotification":
        return None
    try:
        result = data["params"]["result"]
        value = result["value"]
        signature = value["signature"]
    except (KeyError, TypeError):
        logger.warning("Bad logsNotification: %.200r", raw)
        return None
    if not signature:
        return None
    return ActivityEvent(
        signature=signature,
        slot=int((result.get("context") or {}).get("slot", 0)),
        logs=tuple(value.get("logs") or ()),
        err=value.get("err"),
        received_at=time.time(),
    )


class LogStream:
    """
    Reconnecting logsSubscribe stream. Iterate events() inside a task; cancel
    the task (or close the iterator) to unsubscribe and close the socket.
    """

    def __init__(
        self,
        url: str,
        mentions: tuple[str, ...] = (),
        commitment: str = "processed",
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.url = url
        self.mentions = tuple(mentions)
        self.commitment = commitment
        self.max_retries = max_retries
        self._last_message_time = 0.0
        self._failed_connections = 0

    @property
    def last_message_time(self) -> float:
        return self._last_message_time

    async def events(self) -> AsyncIterator[ActivityEvent]:
        """Connect and yield events, with exponential backoff on failures."""
        retries = 0
        while True:
            try:
                async with connect(self.url) as ws:
                    retries = 0  # reset on successful connection
                    logger.info("Activity stream connected to %s", self.url)
                    for req in subscription_requests(self.mentions, self.commitment):
                        await ws.send(json.dumps(req))

                    async for raw_msg in ws:
                        self._last_message_time = time.time()
                        event = parse_log_notification(raw_msg)
                        if event is not None:
                            yield event
                    # Clean close from the server side; reconnect with backoff
                    raise ConnectionError("stream closed by server")

            except (websockets.ConnectionClosed, ConnectionError, OSError) as e:
                retries += 1
                self._failed_connections += 1
                if retries > self.max_retries:
                    logger.error(
                        "Activity stream max retries (%d) exceeded. Last error: %s",
                        self.max_retries, e,
                    )
                    raise RuntimeError(
                        f"Activity stream failed after {self.max_retries} retries: {e}"
                    ) from e

                backoff = min(BACKOFF_BASE * (2 ** (retries - 1)), BACKOFF_MAX)
                logger.warning(
                    "Activity stream disconnected (retry %d/%d), backoff %.1fs: %s",
                    retries, self.max_retries, backoff, e,
                )
                await asyncio.sleep(backoff)
