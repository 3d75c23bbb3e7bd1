"""
Ingestion gateway: authorize an inbound event against the owning account's
tier and persist it.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .database import ChurnOppDatabase
from .errors import AuthorizationError, EntitlementError
from .models import (
    Account,
    EventIngestRequest,
    EventType,
    PersistedEvent,
    SubscriptionTier,
)

log = logging.getLogger(__name__)


_BASIC_EVENTS = frozenset({
    EventType.INTERACTION,
    EventType.SCROLL_DEPTH,
    EventType.SESSION_DURATION,
})

_PREMIUM_EVENTS = _BASIC_EVENTS | {
    EventType.CART_ABANDONMENT,
    EventType.CHECKOUT_PROGRESS,
    EventType.USER_ACTIVE,
    EventType.USER_INACTIVE,
}

_ENTERPRISE_EVENTS = _PREMIUM_EVENTS | {
    EventType.RAGE_CLICK,
    EventType.HELP_CENTER_VISIT,
    EventType.EXIT_INTENT,
    EventType.DEVICE_INFO,
}

# Strictly nested: basic < premium < enterprise
TIER_ALLOWED_EVENTS: dict[SubscriptionTier, frozenset[EventType]] = {
    SubscriptionTier.BASIC: _BASIC_EVENTS,
    SubscriptionTier.PREMIUM: frozenset(_PREMIUM_EVENTS),
    SubscriptionTier.ENTERPRISE: frozenset(_ENTERPRISE_EVENTS),
}


def is_event_allowed(tier: SubscriptionTier, event_type: EventType) -> bool:
    """Check whether a tier may submit an event type."""
    return event_type in TIER_ALLOWED_EVENTS[tier]


def _to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class IngestionGateway:
    """
    Validates and persists collector requests.

    Unknown accounts raise AuthorizationError; event types outside the
    account tier raise EntitlementError. Rejected events are never stored.
    """

    def __init__(self, db: ChurnOppDatabase):
        self.db = db

    def authorize(self, request: EventIngestRequest) -> Account:
        """Resolve the owning account and check the tier allow-list."""
        account = self.db.get_account(request.account_id)
        if account is None:
            raise AuthorizationError("Unknown account")

        if not is_event_allowed(account.tier, request.event_type):
            raise EntitlementError("Event type not permitted for this tier")

        return account

    def ingest(
        self,
        request: EventIngestRequest,
        received_at: Optional[datetime] = None,
    ) -> PersistedEvent:
        """
        Authorize and persist one inbound event.

        Args:
            request: The collector request
            received_at: Ingestion time, used when the request has no timestamp

        Returns:
            The persisted event
        """
        self.authorize(request)

        timestamp = request.timestamp or received_at or datetime.utcnow()
        event = self.db.append_event(PersistedEvent(
            account_id=request.account_id,
            user_id=request.user_id,
            event_type=request.event_type,
            payload=request.payload,
            timestamp=_to_utc_naive(timestamp),
        ))

        if request.email:
            self.db.upsert_user_email(request.account_id, request.user_id, request.email)

        log.debug(
            "Stored %s for %s/%s", event.event_type.value, event.account_id, event.user_id
        )
        return event
