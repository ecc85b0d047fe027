# price_intel/models/alert.py

"""Price alert models: the stored alert, creation requests and decisions."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from price_intel.models.observation import EntityType


class AlertStatus(str, Enum):
    """Lifecycle states of a price alert."""

    ACTIVE = "ACTIVE"
    TRIGGERED = "TRIGGERED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class TriggerReason(str, Enum):
    """Which alert condition fired."""

    TARGET_PRICE = "TARGET_PRICE"
    PRICE_DROP = "PRICE_DROP"


@dataclass
class AlertRequest:
    """User-facing request to create (or update) a price alert."""

    user_id: str
    entity_type: EntityType | str
    entity_id: str
    entity_name: str
    target_price: Decimal | float | str
    current_price: Decimal | float | str
    currency: str
    price_drop_percentage: Decimal | float | str | None = None
    notification_channels: frozenset[str] = frozenset({"EMAIL"})
    expires_at: datetime | None = None


@dataclass
class PriceAlert:
    """A stored price alert row."""

    id: int
    user_id: str
    entity_type: EntityType
    entity_id: str
    entity_name: str
    target_price: Decimal
    current_price_at_creation: Decimal
    currency: str
    status: AlertStatus
    notification_channels: frozenset[str]
    created_at: datetime
    updated_at: datetime
    price_drop_percentage: Decimal | None = None
    expires_at: datetime | None = None
    triggered_price: Decimal | None = None
    triggered_at: datetime | None = None
    last_notified_at: datetime | None = None
    notification_count: int = 0
    last_delivery_error: str | None = None

    def is_expired(self, now: datetime) -> bool:
        """True once ``expires_at`` has passed."""
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class AlertDecision:
    """A trigger decision handed to the notification collaborator."""

    alert_id: int
    user_id: str
    entity_type: EntityType
    entity_id: str
    entity_name: str
    channels: frozenset[str]
    triggered_price: Decimal
    previous_price: Decimal
    currency: str
    reason: TriggerReason


@dataclass
class DeliveryResult:
    """Outcome of handing one decision to the delivery capability."""

    alert_id: int
    ok: bool
    channels: list[str] = field(default_factory=lambda: list[str]())
    error: str = ""
