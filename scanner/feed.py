"""
Feed monitor. Subscribes to the activity stream, deduplicates events,
classifies them into candidate opportunities and publishes one batch per
event on `batches`. A periodic rescan picks up events whose details were not
available on the push path and re-evaluates recently classified transactions
against current state.

Every event id is classified at most once: the known set admits an id once,
and whichever path (push handler or rescan) resolves its details first claims
it for classification.

Every opportunity id is emitted at most once. A classification stays up for
re-evaluation only until it has produced an opportunity.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from client.rpc import RpcError, TransactionSource, TransientRpcError, retry_async
from client.stream import ActivityStream
from pipeline.tasks import PeriodicTask
from scanner.classifier import Classification, OpportunityClassifier
from scanner.models import ActivityEvent, Opportunity, TransactionDetail

logger = logging.getLogger(__name__)


class MonitorState(Enum):
    STOPPED = "stopped"
    MONITORING = "monitoring"


class KnownTransactionSet:
    """
    Bounded, insertion-ordered set of event ids. add() is an atomic
    check-and-insert; the oldest ids are evicted past capacity.
    """

    def __init__(self, capacity: int, on_evict: Callable[[str], None] | None = None) -> None:
        self._capacity = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()
        self._on_evict = on_evict

    def add(self, event_id: str) -> bool:
        """Insert event_id. Returns False if it was already known."""
        evicted: list[str] = []
        with self._lock:
            if event_id in self._ids:
                return False
            self._ids[event_id] = None
            while len(self._ids) > self._capacity:
                old, _ = self._ids.popitem(last=False)
                evicted.append(old)
        if self._on_evict is not None:
            for old in evicted:
                self._on_evict(old)
        return True

    def recent(self, n: int) -> list[str]:
        """The n most recently added ids, oldest first."""
        with self._lock:
            ids = list(self._ids)
        return ids[-n:] if n > 0 else []

    def __contains__(self, event_id: object) -> bool:
        with self._lock:
            return event_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


@dataclass
class FeedConfig:
    scan_interval_sec: float = 1.0
    rescan_window: int = 1000
    rescan_backoff_sec: float = 1.0
    max_known_transactions: int = 100_000
    detail_fetch_retries: int = 3
    detail_retry_delay_sec: float = 0.25
    stream_restart_backoff_sec: float = 5.0

    @classmethod
    def from_config(cls, cfg) -> FeedConfig:
        return cls(
            scan_interval_sec=cfg.scan_interval_sec,
            rescan_window=cfg.rescan_window,
            rescan_backoff_sec=cfg.rescan_backoff_sec,
            max_known_transactions=cfg.max_known_transactions,
            detail_fetch_retries=cfg.detail_fetch_retries,
            detail_retry_delay_sec=cfg.detail_retry_delay_sec,
        )


class FeedMonitor:
    def __init__(
        self,
        stream: ActivityStream,
        source: TransactionSource,
        classifier: OpportunityClassifier,
        config: FeedConfig | None = None,
    ) -> None:
        self._stream = stream
        self._source = source
        self._classifier = classifier
        self._config = config or FeedConfig()
        self._state = MonitorState.STOPPED

        self._known = KnownTransactionSet(self._config.max_known_transactions, on_evict=self._forget)
        self._unresolved: set[str] = set()
        self._claim_lock = threading.Lock()
        self._classified: OrderedDict[str, Classification] = OrderedDict()
        self._emitted = KnownTransactionSet(self._config.max_known_transactions)

        self._subscription: asyncio.Task | None = None
        self._handlers: set[asyncio.Task] = set()
        self._rescan = PeriodicTask(
            "feed-rescan",
            self._config.scan_interval_sec,
            self.rescan_once,
            error_backoff_sec=self._config.rescan_backoff_sec,
        )

        # Outbound channel: one list of candidates per event
        self.batches: asyncio.Queue[list[Opportunity]] = asyncio.Queue()

        self.events_seen = 0
        self.duplicates_dropped = 0
        self.classifications = 0
        self.candidates_emitted = 0
        self.event_errors = 0

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_monitoring(self) -> bool:
        return self._state is MonitorState.MONITORING

    @property
    def known(self) -> KnownTransactionSet:
        return self._known

    # -- Lifecycle --

    async def start(self) -> None:
        if self._state is MonitorState.MONITORING:
            return
        self._state = MonitorState.MONITORING
        self._subscription = asyncio.create_task(self._subscribe(), name="feed-subscription")
        self._rescan.start()
        logger.info(
            "Feed monitor started (rescan every %.1fs over last %d ids)",
            self._config.scan_interval_sec, self._config.rescan_window,
        )

    async def stop(self) -> None:
        if self._state is MonitorState.STOPPED:
            return
        self._state = MonitorState.STOPPED
        await self._rescan.stop()
        pending = [t for t in (self._subscription, *self._handlers) if t is not None]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._subscription = None
        self._handlers.clear()
        logger.info("Feed monitor stopped (%s)", self.stats)

    async def _subscribe(self) -> None:
        while self.is_monitoring:
            try:
                async with contextlib.aclosing(self._stream.events()) as events:
                    async for event in events:
                        if not self.is_monitoring:
                            return
                        self._spawn(self.handle_event(event))
                logger.warning("Activity stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Activity stream failed: %s", e)
            if self.is_monitoring:
                logger.info("Reopening activity stream in %.1fs", self._config.stream_restart_backoff_sec)
                await asyncio.sleep(self._config.stream_restart_backoff_sec)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    # -- Per-event handling --

    async def handle_event(self, event: ActivityEvent) -> None:
        """Process one stream event. Never raises: faults stay with this event."""
        if not self.is_monitoring:
            return
        self.events_seen += 1
        signature = event.signature
        if not self._known.add(signature):
            self.duplicates_dropped += 1
            return
        with self._claim_lock:
            self._unresolved.add(signature)

        try:
            detail = await retry_async(
                self._source.get_transaction,
                signature,
                attempts=self._config.detail_fetch_retries,
                delay_sec=self._config.detail_retry_delay_sec,
            )
            if detail is None:
                logger.debug("Transaction %s not yet available, leaving for rescan", signature)
                return
            await self._process(detail)
        except (TransientRpcError, RpcError) as e:
            self.event_errors += 1
            logger.warning("Detail lookup for %s abandoned: %s", signature, e)
        except Exception:
            self.event_errors += 1
            logger.exception("Error processing transaction %s", signature)

    def _claim(self, signature: str) -> bool:
        """Take an unresolved id for classification. Only the first caller wins."""
        with self._claim_lock:
            if signature not in self._unresolved:
                return False
            self._unresolved.discard(signature)
            return True

    def _forget(self, signature: str) -> None:
        with self._claim_lock:
            self._unresolved.discard(signature)
            self._classified.pop(signature, None)

    async def _process(self, detail: TransactionDetail) -> None:
        if not self._claim(detail.signature):
            return
        classification = self._classifier.classify(detail)
        self.classifications += 1
        if classification.is_empty:
            return
        opportunities = await self._classifier.find_opportunities(classification)
        if self._emit(opportunities):
            return
        with self._claim_lock:
            self._classified[detail.signature] = classification
            while len(self._classified) > self._config.rescan_window:
                self._classified.popitem(last=False)

    def _emit(self, opportunities: list[Opportunity]) -> bool:
        """Publish the opportunities not emitted before. Returns True if any went out."""
        if not opportunities or not self.is_monitoring:
            return False
        fresh = [opp for opp in opportunities if self._emitted.add(opp.id)]
        if not fresh:
            return False
        self.batches.put_nowait(fresh)
        self.candidates_emitted += len(fresh)
        return True

    # -- Rescan --

    async def rescan_once(self) -> None:
        """
        One rescan pass over the most recent known ids: classify ids whose
        details were never resolved, then re-evaluate classifications that
        have not produced an opportunity yet against current state.
        """
        if not self.is_monitoring:
            return
        window = self._known.recent(self._config.rescan_window)
        with self._claim_lock:
            pending = [sig for sig in window if sig in self._unresolved]

        just_processed: set[str] = set()
        if pending:
            details = await retry_async(
                self._source.get_transactions,
                pending,
                attempts=self._config.detail_fetch_retries,
                delay_sec=self._config.detail_retry_delay_sec,
            )
            for detail in details:
                if detail is None or not self.is_monitoring:
                    continue
                just_processed.add(detail.signature)
                await self._process(detail)

        with self._claim_lock:
            stored = [
                self._classified[sig]
                for sig in window
                if sig in self._classified and sig not in just_processed
            ]
        if not stored or not self.is_monitoring:
            return
        results = await asyncio.gather(
            *(self._classifier.find_opportunities(c) for c in stored),
            return_exceptions=True,
        )
        for classification, res in zip(stored, results):
            if isinstance(res, Exception):
                logger.warning("Re-evaluation of %s failed: %s", classification.event_id, res)
                continue
            if self._emit(res):
                with self._claim_lock:
                    self._classified.pop(classification.event_id, None)
        logger.debug("Rescan: %d unresolved, %d re-evaluated", len(pending), len(stored))

    @property
    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "known": len(self._known),
            "unresolved": len(self._unresolved),
            "events_seen": self.events_seen,
            "duplicates_dropped": self.duplicates_dropped,
            "classifications": self.classifications,
            "candidates_emitted": self.candidates_emitted,
            "event_errors": self.event_errors,
        }
