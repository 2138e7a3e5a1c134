"""Change forwarder: republish committed ledger events on the event bus.

The forwarder is driven by the table's change feed, not by the
operations, so it runs out-of-band: an operation returning does not
mean its events have been forwarded.

Delivery is at-least-once:

*  ``ChangeForwarder.forward()`` publishes one feed batch as one bus
   batch, retrying rejected entries with exponential backoff.  When
   attempts run out the records are dead-lettered, logged at ERROR, and
   ``ForwardingError`` is raised.
*  ``FeedPump`` advances the consumer checkpoint only after ``forward()``
   returns, so a failed batch is read again on the next poll.  Bus
   consumers must therefore tolerate duplicates.

Dead letters are kept once per feed record, newest last, up to
``max_dead_letters``.  Records that cannot be decoded are also published
to the bus under ``dead_letter_detail_type`` in the same batch as the
events, so they are durable before the checkpoint moves past them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence

from account_ledger.core.enums import DetailTypeMode
from account_ledger.core.errors import CorruptItemError, EventBusUnavailableError, ForwardingError
from account_ledger.domain.events import event_from_body, event_to_body
from account_ledger.infrastructure.event_bus import BusEntry, EventBus
from account_ledger.infrastructure.event_store import is_event_item
from account_ledger.infrastructure.table import ChangeFeed, ChangeRecord

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ChangeForwarder:
    """Maps change records to bus entries and publishes them.

    Parameters
    ----------
    bus
        Outbound event bus.
    source
        Source tag identifying the ledger on every entry.
    detail_type_mode
        ``KIND`` tags entries with the event kind; ``FIXED`` uses
        *fixed_detail_type* for every entry.
    max_attempts
        Publish attempts per batch before dead-lettering.
    max_dead_letters
        Dead letters kept in memory; the oldest are evicted first.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        source: str = "ledger.accounts",
        event_bus_name: str = "",
        detail_type_mode: DetailTypeMode = DetailTypeMode.KIND,
        fixed_detail_type: str = "ACCOUNT_EVENT",
        dead_letter_detail_type: str = "DEAD_LETTER",
        max_attempts: int = 5,
        backoff_base_seconds: float = 0.2,
        backoff_max_seconds: float = 5.0,
        max_dead_letters: int = 1000,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if max_dead_letters < 1:
            raise ValueError("max_dead_letters must be >= 1")
        self._bus = bus
        self._source = source
        self._bus_name = event_bus_name
        self._mode = detail_type_mode
        self._fixed_type = fixed_detail_type
        self._dead_letter_type = dead_letter_detail_type
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._max_dead_letters = max_dead_letters
        self._sleep = sleep
        self._dead_letters: OrderedDict[str, tuple[ChangeRecord, str]] = OrderedDict()

    @property
    def dead_letters(self) -> list[tuple[ChangeRecord, str]]:
        """Records that could not be forwarded, with the latest reason."""
        return list(self._dead_letters.values())

    def _dead_letter(self, record: ChangeRecord, reason: str) -> None:
        self._dead_letters.pop(record.record_id, None)
        self._dead_letters[record.record_id] = (record, reason)
        while len(self._dead_letters) > self._max_dead_letters:
            self._dead_letters.popitem(last=False)

    def dead_letter_entry(self, record: ChangeRecord, reason: str) -> BusEntry:
        """Bus entry carrying the raw image of an undeliverable record."""
        detail = {"reason": reason, "new_image": record.new_image}
        return BusEntry(
            source=self._source,
            detail_type=self._dead_letter_type,
            detail=json.dumps(detail, sort_keys=True, default=str),
            time=record.created_at,
            resources=(record.record_id,),
            event_bus_name=self._bus_name,
        )

    def to_entry(self, record: ChangeRecord) -> BusEntry | None:
        """Build the bus entry for *record*; ``None`` for non-event items.

        Raises ``CorruptItemError`` if the image is not a valid event.
        """
        if not is_event_item(record.new_image):
            return None
        event = event_from_body(record.new_image)
        if self._mode == DetailTypeMode.FIXED:
            detail_type = self._fixed_type
        else:
            detail_type = event.kind.value
        return BusEntry(
            source=self._source,
            detail_type=detail_type,
            detail=json.dumps(event_to_body(event), sort_keys=True),
            time=event.occurred_at,
            resources=(record.record_id,),
            event_bus_name=self._bus_name,
        )

    async def forward(self, records: Sequence[ChangeRecord]) -> int:
        """Publish every event in *records* as one batch.

        Corrupt records travel in the same batch as dead-letter entries.
        Returns the number of events published.
        """
        pending: list[tuple[BusEntry, ChangeRecord]] = []
        corrupt: list[tuple[BusEntry, ChangeRecord]] = []
        for record in records:
            try:
                entry = self.to_entry(record)
            except CorruptItemError as exc:
                reason = f"corrupt: {exc}"
                logger.error("Dead-lettering corrupt record %s: %s", record.record_id, exc)
                self._dead_letter(record, reason)
                corrupt.append((self.dead_letter_entry(record, reason), record))
                continue
            if entry is None:
                logger.debug("Skipping non-event record %s", record.record_id)
                continue
            pending.append((entry, record))

        published = len(pending)
        pending.extend(corrupt)
        attempt = 0
        while pending:
            attempt += 1
            entries = [entry for entry, _ in pending]
            try:
                failed = await self._bus.publish_batch(entries)
            except EventBusUnavailableError as exc:
                logger.warning(
                    "Bus unavailable (attempt %d/%d): %s", attempt, self._max_attempts, exc,
                )
                failed = entries
            rejected = set(failed)
            pending = [(e, r) for e, r in pending if e in rejected]
            if not pending:
                break

            if attempt >= self._max_attempts:
                for _entry, record in pending:
                    if record.record_id not in self._dead_letters:
                        self._dead_letter(record, "publish retries exhausted")
                logger.error(
                    "Dead-lettered %d record(s) after %d attempts: %s",
                    len(pending), attempt, [r.record_id for _, r in pending],
                )
                raise ForwardingError(len(pending), attempt)

            delay = min(self._backoff_max, self._backoff_base * 2 ** (attempt - 1))
            await self._sleep(delay)

        if published:
            logger.info("Forwarded %d event(s) from %d record(s)", published, len(records))
        return published


class FeedPump:
    """Reads the change feed in batches and hands them to the forwarder."""

    def __init__(
        self,
        feed: ChangeFeed,
        forwarder: ChangeForwarder,
        *,
        consumer: str = "change-forwarder",
        batch_size: int = 10,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self._feed = feed
        self._forwarder = forwarder
        self._consumer = consumer
        self._batch_size = batch_size
        self._poll_interval = poll_interval_seconds
        self._stopped = asyncio.Event()

    async def run_once(self) -> int:
        """Forward one batch.  Returns the number of feed records consumed."""
        checkpoint = await self._feed.load_checkpoint(self._consumer)
        records = await self._feed.read_batch(checkpoint, self._batch_size)
        if not records:
            return 0
        await self._forwarder.forward(records)
        await self._feed.save_checkpoint(self._consumer, records[-1].sequence)
        return len(records)

    async def drain(self) -> int:
        """Forward batches until the feed is caught up."""
        total = 0
        while True:
            consumed = await self.run_once()
            if not consumed:
                return total
            total += consumed

    async def run_forever(self) -> None:
        """Poll until ``stop()`` is called.

        Forwarding failures are logged and the batch is retried on the
        next poll; store failures propagate.
        """
        self._stopped.clear()
        while not self._stopped.is_set():
            try:
                consumed = await self.run_once()
            except ForwardingError:
                logger.exception("Batch not forwarded; retrying on next poll")
                consumed = 0
            if consumed:
                continue
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()
