"""Event ingestion, de-duplication and batched dispatch.

Event Grid delivers at least once. The router:
1. Validates every envelope (an unparseable delivery is an error, never dropped)
2. Collapses duplicates inside one delivery
3. Skips events that already converged recently (ConvergenceLedger)
4. Dispatches batches of ``batch_size`` events, several batches at once
5. Raises DeliveryError after the whole delivery if any event failed, so
   the platform's retry policy redelivers it

Handler calls are idempotent, so redelivery of an event that partially
succeeded is safe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from .config import MAX_DEDUPE_LEDGER_ENTRIES, MAX_EVENTS_PER_DELIVERY, Config
from .errors import DeliveryError, EventParseError, HandlerError
from .handler import MaintenanceHandler
from .models import EventOutcome, EventStatus, MaintenanceEvent, MaintenanceEventKind

logger = logging.getLogger(__name__)

SUBSCRIPTION_VALIDATION_EVENT = "Microsoft.EventGrid.SubscriptionValidationEvent"

DedupeKey = tuple[str, MaintenanceEventKind, str]


def _as_envelopes(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list):
        for index, item in enumerate(payload):
            if not isinstance(item, dict):
                raise EventParseError(f"Envelope {index} is not an object")
        return payload
    raise EventParseError(f"Payload must be an object or a list, got {type(payload).__name__}")


def validation_response(payload: Any) -> dict[str, str] | None:
    """Answer an Event Grid subscription validation handshake, if present."""
    for envelope in _as_envelopes(payload):
        if envelope.get("eventType") == SUBSCRIPTION_VALIDATION_EVENT:
            code = (envelope.get("data") or {}).get("validationCode")
            if not code:
                raise EventParseError("Subscription validation event without validationCode")
            return {"validationResponse": code}
    return None


def parse_events(payload: Any) -> list[MaintenanceEvent]:
    """Parse a delivered payload into maintenance events.

    Subscription validation envelopes are ignored here; see
    ``validation_response``.

    Raises:
        EventParseError: If any envelope is malformed.
    """
    envelopes = _as_envelopes(payload)
    if len(envelopes) > MAX_EVENTS_PER_DELIVERY:
        raise EventParseError(
            f"Delivery has {len(envelopes)} events, exceeding {MAX_EVENTS_PER_DELIVERY}"
        )

    events: list[MaintenanceEvent] = []
    for index, envelope in enumerate(envelopes):
        if envelope.get("eventType") == SUBSCRIPTION_VALIDATION_EVENT:
            continue
        try:
            events.append(MaintenanceEvent.from_envelope(envelope))
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise EventParseError(f"Envelope {index} is invalid: {'; '.join(errors)}") from e
    return events


class ConvergenceLedger:
    """Remembers events whose handling fully converged.

    Only fully successful events are recorded; partial and failed events
    are handled again on redelivery.

    Events carrying a correlation ID are told apart per window: a start is
    also treated as converged once the completion of the same window was
    recorded, so a late redelivered start cannot re-suppress a finished
    window. Without a correlation ID one window cannot be told from the
    next, so recording one kind forgets the uncorrelated other kind and the
    next occurrence of a recurring window is not mistaken for a duplicate.

    Lives as long as its router. Not persisted: after a restart, or across
    single-delivery invocations, duplicates are handled again, which the
    idempotent rule operations make harmless.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = MAX_DEDUPE_LEDGER_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[DedupeKey, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _purge(self) -> None:
        cutoff = self._clock() - self._ttl
        while self._entries:
            key, recorded_at = next(iter(self._entries.items()))
            if recorded_at > cutoff:
                break
            self._entries.pop(key)

    def seen(self, key: DedupeKey) -> bool:
        if self._ttl <= 0:
            return False
        self._purge()
        if key in self._entries:
            return True
        maintenance_id, kind, correlation_id = key
        if kind == MaintenanceEventKind.STARTING and correlation_id:
            return (maintenance_id, MaintenanceEventKind.COMPLETED, correlation_id) in self._entries
        return False

    def record(self, key: DedupeKey) -> None:
        if self._ttl <= 0:
            return
        maintenance_id, kind, correlation_id = key
        if not correlation_id:
            stale = [
                k for k in self._entries if k[0] == maintenance_id and k[1] != kind and not k[2]
            ]
            for existing in stale:
                self._entries.pop(existing)

        self._entries.pop(key, None)
        self._entries[key] = self._clock()
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)


def _describe(event: MaintenanceEvent) -> str:
    return f"{event.kind.value}:{event.maintenance_id}"


class EventRouter:
    """Dispatch delivered events to the handler in batches."""

    def __init__(
        self,
        handler: MaintenanceHandler,
        config: Config,
        ledger: ConvergenceLedger | None = None,
    ) -> None:
        self._handler = handler
        self._config = config
        self._ledger = ledger or ConvergenceLedger(config.dedupe_ttl_seconds)
        self._shutdown_requested = False

    def shutdown(self) -> None:
        """Stop dispatching further events and ask the handler to wind down."""
        self._shutdown_requested = True
        self._handler.shutdown()

    async def dispatch(self, payload: Any) -> list[EventOutcome]:
        """Handle every event in a delivery.

        Returns:
            Outcomes in delivery order, duplicates in place. Events that
            were never handled (shutdown, unexpected error) have none.

        Raises:
            EventParseError: If the payload cannot be parsed.
            DeliveryError: If one or more events failed (after all were tried).
        """
        events = parse_events(payload)

        # Indexed by delivery position
        slots: list[EventOutcome | None] = [None] * len(events)
        unique: list[tuple[int, MaintenanceEvent]] = []
        keys: set[DedupeKey] = set()
        for index, event in enumerate(events):
            if event.dedupe_key in keys:
                slots[index] = EventOutcome(event=event, duplicate=True)
                continue
            keys.add(event.dedupe_key)
            unique.append((index, event))

        if len(unique) < len(events):
            logger.info(
                "Collapsed duplicate events in delivery",
                extra={"duplicates": len(events) - len(unique), "events": len(events)},
            )

        batch_size = self._config.batch_size
        batches = [unique[i : i + batch_size] for i in range(0, len(unique), batch_size)]
        semaphore = asyncio.Semaphore(self._config.max_concurrent_batches)
        failures: list[tuple[str, str]] = []

        async def run_batch(batch: list[tuple[int, MaintenanceEvent]]) -> None:
            async with semaphore:
                # Events within a batch run in order
                for index, event in batch:
                    slots[index] = await self._dispatch_one(event, failures)

        await asyncio.gather(*(run_batch(b) for b in batches))
        outcomes = [o for o in slots if o is not None]

        logger.info(
            "Delivery dispatched",
            extra={
                "events": len(events),
                "batches": len(batches),
                "failed": len(failures),
                "statuses": [o.status.value for o in outcomes],
            },
        )

        if failures:
            raise DeliveryError(failures, outcomes)
        return outcomes

    async def _dispatch_one(
        self, event: MaintenanceEvent, failures: list[tuple[str, str]]
    ) -> EventOutcome | None:
        description = _describe(event)

        if self._shutdown_requested:
            failures.append((description, "not dispatched: shutting down"))
            return None

        if self._ledger.seen(event.dedupe_key):
            logger.info(
                "Skipping already converged event",
                extra={"kind": event.kind.value, "maintenance_id": event.maintenance_id},
            )
            return EventOutcome(event=event, duplicate=True)

        try:
            outcome = await self._handler.handle(event)
        except HandlerError as e:
            logger.error(
                "Event failed, reporting for redelivery",
                extra={"event": description, "error": str(e)},
            )
            failures.append((description, str(e)))
            return e.outcome
        except Exception as e:
            logger.exception(
                "Unexpected error handling event",
                extra={"event": description, "error": str(e), "error_type": type(e).__name__},
            )
            failures.append((description, f"{type(e).__name__}: {e}"))
            return None

        if outcome.status == EventStatus.SUCCEEDED:
            self._ledger.record(event.dedupe_key)
        return outcome
