"""
Data models for ChurnOpp event collection and churn scoring.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Semantic behavioral event vocabulary."""
    INTERACTION = "interaction"
    SCROLL_DEPTH = "scrollDepth"
    SESSION_DURATION = "sessionDuration"
    CART_ABANDONMENT = "cartAbandonment"
    CHECKOUT_PROGRESS = "checkoutProgress"
    USER_ACTIVE = "userActive"
    USER_INACTIVE = "userInactive"
    RAGE_CLICK = "rageClick"
    HELP_CENTER_VISIT = "helpCenterVisit"
    EXIT_INTENT = "exitIntent"
    DEVICE_INFO = "deviceInfo"


class SubscriptionTier(str, Enum):
    """Entitlement tier of an account."""
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class DeviceInfo(BaseModel):
    """Device description computed once per session."""
    model_config = ConfigDict(frozen=True)

    device: str = "Desktop"
    user_agent: str = ""
    platform: str = ""
    language: str = ""

    def to_payload(self) -> dict:
        return {
            "device": self.device,
            "userAgent": self.user_agent,
            "platform": self.platform,
            "language": self.language,
        }


class BehavioralEvent(BaseModel):
    """A semantic event recognized by the detector. Never mutated."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    session_id: str
    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    client_email: Optional[str] = None
    device_info: Optional[DeviceInfo] = None

    def to_wire(self) -> dict:
        """Build the collector request body."""
        payload = dict(self.payload)
        if self.device_info is not None:
            payload["deviceInfo"] = self.device_info.to_payload()
        body = {
            "accountId": self.account_id,
            "userId": self.session_id,
            "eventType": self.event_type.value,
            "payload": payload,
        }
        if self.client_email:
            body["email"] = self.client_email
        return body


class PendingDelivery(BaseModel):
    """An event whose delivery failed and awaits a retry."""
    event: BehavioralEvent
    attempt_count: int = Field(ge=1)


class Account(BaseModel):
    """A customer account that owns tracked users."""
    account_id: str
    email: str
    tier: SubscriptionTier = SubscriptionTier.BASIC


class EventIngestRequest(BaseModel):
    """Body accepted by the collector endpoint."""
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId")
    user_id: str = Field(alias="userId")
    event_type: EventType = Field(alias="eventType")
    payload: dict[str, Any] = Field(default_factory=dict)
    email: Optional[str] = None
    timestamp: Optional[datetime] = None


class PersistedEvent(BaseModel):
    """Server-side durable form of a behavioral event."""
    id: Optional[int] = None
    account_id: str
    user_id: str
    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "userId": self.user_id,
            "eventType": self.event_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class ChurnScoreEntry(BaseModel):
    """Cached churn score for one (account, user) pair."""
    account_id: str
    user_id: str
    score: float = Field(ge=0.0, le=1.0)
    computed_at: float = Field(description="Monotonic clock reading at computation")


class ScoreResult(BaseModel):
    """Outcome of a score lookup."""
    account_id: str
    user_id: str
    score: float = Field(ge=0.0, le=1.0)
    cached: bool = False
    alert_scheduled: bool = False


class ChurnAlert(BaseModel):
    """A human-facing alert about a high-risk user."""
    account_id: str
    user_id: str
    churn_score: float
    recipient: str
    user_email: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
