"""Payment ledger: webhook event store and charge attempts.

``payment_events`` is the idempotency and ordering store for provider
webhooks, keyed by the unique pair (provider, event_id). ``charges`` records
every charge the gateway initiates so reconciliation can close it out.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from models import ChargeRecord, PaymentEventStatus, PaymentProvider, ProviderEvent

logger = logging.getLogger(__name__)

# statuses that end processing for an event id; FAILED may be reclaimed on redelivery
TERMINAL_EVENT_STATUSES = frozenset({
    PaymentEventStatus.PROCESSED.value,
    PaymentEventStatus.DEFERRED.value,
    PaymentEventStatus.STALE.value,
    PaymentEventStatus.IGNORED.value,
})

# a PROCESSING claim older than this is assumed abandoned by a crashed worker
PROCESSING_TAKEOVER_AFTER = timedelta(minutes=5)


class PaymentLedger(ABC):

    @abstractmethod
    async def claim_event(self, event: ProviderEvent) -> Optional[str]:
        """Claim an event for processing.

        Returns None when the caller now owns the event, otherwise the status
        already on record (the event must not be applied again).
        """

    @abstractmethod
    async def finish_event(
        self, provider: PaymentProvider, event_id: str, status: PaymentEventStatus, **fields: Any
    ) -> None:
        pass

    @abstractmethod
    async def deferred_events(self, provider: PaymentProvider, subscription_id: str) -> List[ProviderEvent]:
        """Deferred events for a subscription, oldest first."""

    @abstractmethod
    async def subscription_seen(self, provider: PaymentProvider, subscription_id: str) -> bool:
        """True if any event for this subscription has been applied."""

    @abstractmethod
    async def record_charge(self, charge: ChargeRecord) -> None:
        pass

    @abstractmethod
    async def update_charge(self, charge_id: str, set_fields: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get_charge(self, charge_id: str) -> Optional[ChargeRecord]:
        pass

    @abstractmethod
    async def get_charge_by_reference(self, provider: PaymentProvider, reference: str) -> Optional[ChargeRecord]:
        pass


class MongoPaymentLedger(PaymentLedger):

    def __init__(self, db):
        self.db = db

    async def claim_event(self, event: ProviderEvent) -> Optional[str]:
        key = {"provider": event.provider.value, "event_id": event.event_id}
        existing = await self.db.payment_events.find_one(key, {"_id": 0, "status": 1, "received_at": 1})
        if existing and existing.get("status") in TERMINAL_EVENT_STATUSES:
            return existing["status"]
        if existing and existing.get("status") == PaymentEventStatus.PROCESSING.value:
            received_at = existing.get("received_at")
            if received_at and datetime.now(timezone.utc) - received_at < PROCESSING_TAKEOVER_AFTER:
                return existing["status"]

        record = {
            **key,
            "event_type": event.event_type,
            "account_id": event.account_id,
            "subscription_id": event.subscription_id,
            "occurred_at": event.occurred_at,
            "received_at": datetime.now(timezone.utc),
            "status": PaymentEventStatus.PROCESSING.value,
            "error": None,
            "event": event.model_dump(),
        }
        if existing:
            # FAILED or abandoned earlier; take it over for another attempt
            await self.db.payment_events.update_one(key, {"$set": record})
            return None
        try:
            await self.db.payment_events.insert_one(record)
        except DuplicateKeyError:
            logger.info(
                "WEBHOOK_DUPLICATE_RACE provider=%s event_id=%s", event.provider.value, event.event_id
            )
            return PaymentEventStatus.PROCESSING.value
        return None

    async def finish_event(
        self, provider: PaymentProvider, event_id: str, status: PaymentEventStatus, **fields: Any
    ) -> None:
        await self.db.payment_events.update_one(
            {"provider": provider.value, "event_id": event_id},
            {"$set": {**fields, "status": status.value, "processed_at": datetime.now(timezone.utc)}},
        )

    async def deferred_events(self, provider: PaymentProvider, subscription_id: str) -> List[ProviderEvent]:
        cursor = self.db.payment_events.find(
            {
                "provider": provider.value,
                "subscription_id": subscription_id,
                "status": PaymentEventStatus.DEFERRED.value,
            },
            {"_id": 0, "event": 1},
        ).sort("occurred_at", 1)
        docs = await cursor.to_list(length=100)
        return [ProviderEvent(**d["event"]) for d in docs if d.get("event")]

    async def subscription_seen(self, provider: PaymentProvider, subscription_id: str) -> bool:
        doc = await self.db.payment_events.find_one(
            {
                "provider": provider.value,
                "subscription_id": subscription_id,
                "status": PaymentEventStatus.PROCESSED.value,
            },
            {"_id": 0, "event_id": 1},
        )
        return doc is not None

    async def record_charge(self, charge: ChargeRecord) -> None:
        await self.db.charges.insert_one(charge.model_dump())

    async def update_charge(self, charge_id: str, set_fields: Dict[str, Any]) -> None:
        await self.db.charges.update_one(
            {"charge_id": charge_id},
            {"$set": {**set_fields, "updated_at": datetime.now(timezone.utc)}},
        )

    async def get_charge(self, charge_id: str) -> Optional[ChargeRecord]:
        doc = await self.db.charges.find_one({"charge_id": charge_id}, {"_id": 0})
        return ChargeRecord(**doc) if doc else None

    async def get_charge_by_reference(self, provider: PaymentProvider, reference: str) -> Optional[ChargeRecord]:
        doc = await self.db.charges.find_one(
            {"provider": provider.value, "provider_reference": reference}, {"_id": 0}
        )
        return ChargeRecord(**doc) if doc else None
