# price_intel/services/notifier.py

"""Builds price-drop notifications and hands them to a delivery channel.

Delivery itself (e-mail, push) belongs to an external service; this
module only offers a logging sink and a JSON webhook sink.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

from curl_cffi import requests as curl_requests

from price_intel.config.settings import Settings
from price_intel.models.alert import AlertDecision, DeliveryResult
from price_intel.models.observation import EntityType

logger = logging.getLogger("price_intel.notifier")

_ENTITY_LABELS: dict[EntityType, str] = {
    EntityType.HOTEL: "hotel",
    EntityType.FLIGHT: "flight",
    EntityType.TOUR: "tour",
}


def entity_url(entity_type: EntityType, entity_id: str) -> str:
    """Public page for an entity, used as the notification's link."""
    base = Settings.APP_BASE_URL.rstrip("/")
    if entity_type is EntityType.HOTEL:
        return f"{base}/hotels/{entity_id}"
    if entity_type is EntityType.FLIGHT:
        return f"{base}/flights/search?id={entity_id}"
    if entity_type is EntityType.TOUR:
        return f"{base}/tours/{entity_id}"
    return base


@dataclass
class PriceDropNotification:
    """Everything a delivery channel needs to tell the user."""

    alert_id: int
    user_id: str
    channels: list[str]
    entity_type: str
    entity_id: str
    entity_name: str
    old_price: str
    new_price: str
    currency: str
    savings: str
    savings_percentage: float
    entity_url: str
    reason: str
    title: str
    message: str

    def to_payload(self) -> dict[str, Any]:
        """JSON-serialisable form."""
        return asdict(self)


def build_notification(decision: AlertDecision) -> PriceDropNotification:
    """Turn a trigger decision into a user-facing notification."""
    old = decision.previous_price
    new = decision.triggered_price
    savings = old - new
    pct = float(savings / old * 100) if old > 0 else 0.0
    label = _ENTITY_LABELS.get(decision.entity_type, "item")
    if savings > 0:
        message = (
            f"Price dropped {pct:.1f}% from {decision.currency} {old:.2f} "
            f"to {decision.currency} {new:.2f}"
        )
    else:
        message = (
            f"Your watched {label} is now {decision.currency} {new:.2f}"
        )
    return PriceDropNotification(
        alert_id=decision.alert_id,
        user_id=decision.user_id,
        channels=sorted(decision.channels),
        entity_type=decision.entity_type.value,
        entity_id=decision.entity_id,
        entity_name=decision.entity_name,
        old_price=str(old),
        new_price=str(new),
        currency=decision.currency,
        savings=str(savings.quantize(Decimal("0.01"))),
        savings_percentage=round(pct, 1),
        entity_url=entity_url(decision.entity_type, decision.entity_id),
        reason=decision.reason.value,
        title=f"Price Drop Alert: {decision.entity_name}",
        message=message,
    )


class Notifier(ABC):
    """The ``send(notification) -> result`` delivery capability."""

    @abstractmethod
    def send(self, notification: PriceDropNotification) -> DeliveryResult:
        """Deliver one notification; must not raise for delivery failures."""
        ...


class LoggingNotifier(Notifier):
    """Writes notifications to the log; the default when nothing is set up."""

    def send(self, notification: PriceDropNotification) -> DeliveryResult:
        logger.info(
            "[%s] %s -> user %s: %s",
            ",".join(notification.channels),
            notification.title,
            notification.user_id,
            notification.message,
        )
        return DeliveryResult(
            alert_id=notification.alert_id,
            ok=True,
            channels=list(notification.channels),
        )


class WebhookNotifier(Notifier):
    """POSTs notifications as JSON to a delivery service."""

    def __init__(self, url: str | None = None) -> None:
        self.url = url or Settings.NOTIFY_WEBHOOK_URL
        self.session = curl_requests.Session()

    def send(self, notification: PriceDropNotification) -> DeliveryResult:
        try:
            resp = self.session.post(
                self.url,
                json=notification.to_payload(),
                headers={"Content-Type": "application/json"},
                timeout=Settings.REQUEST_TIMEOUT,
            )
        except Exception as exc:
            logger.error(
                "Webhook delivery failed for alert %d: %s",
                notification.alert_id,
                exc,
                exc_info=True,
            )
            return DeliveryResult(
                alert_id=notification.alert_id, ok=False, error=str(exc),
            )
        if not 200 <= resp.status_code < 300:
            logger.warning(
                "Webhook returned HTTP %d for alert %d",
                resp.status_code,
                notification.alert_id,
            )
            return DeliveryResult(
                alert_id=notification.alert_id,
                ok=False,
                error=f"HTTP {resp.status_code}",
            )
        return DeliveryResult(
            alert_id=notification.alert_id,
            ok=True,
            channels=list(notification.channels),
        )


def build_notifier() -> Notifier:
    """Webhook delivery when a URL is configured, log-only otherwise."""
    if Settings.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier()
    return LoggingNotifier()
