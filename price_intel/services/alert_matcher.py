# price_intel/services/alert_matcher.py

"""Decides which ACTIVE alerts a new price triggers."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from price_intel.errors import ConcurrencyConflict
from price_intel.models.alert import (
    AlertDecision,
    AlertStatus,
    PriceAlert,
    TriggerReason,
)
from price_intel.models.observation import EntityType, parse_price, to_utc
from price_intel.storage.alert_store import AlertStore
from price_intel.storage.database import utcnow

logger = logging.getLogger("price_intel.matcher")


@dataclass
class MatchResult:
    """Full outcome of one evaluation pass for an entity."""

    decisions: list[AlertDecision] = field(
        default_factory=lambda: list[AlertDecision]()
    )
    expired_ids: list[int] = field(default_factory=lambda: list[int]())
    conflicts: int = 0


def trigger_reason(
    alert: PriceAlert, latest_price: Decimal,
) -> TriggerReason | None:
    """Which condition *latest_price* satisfies, if any.

    The target price is checked first; an alert with both conditions
    set fires on whichever holds.
    """
    if latest_price <= alert.target_price:
        return TriggerReason.TARGET_PRICE
    reference = alert.current_price_at_creation
    if alert.price_drop_percentage is not None and reference > 0:
        drop_pct = (reference - latest_price) / reference * 100
        if drop_pct >= alert.price_drop_percentage:
            return TriggerReason.PRICE_DROP
    return None


class AlertMatcher:
    """Evaluates ACTIVE alerts and claims each trigger exactly once."""

    def __init__(self, alerts: AlertStore) -> None:
        self.alerts = alerts

    def evaluate(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        latest_price: Decimal | float | str,
        now: datetime | None = None,
    ) -> list[AlertDecision]:
        """Decisions for every alert this price triggers."""
        return self.evaluate_detailed(
            entity_type, entity_id, latest_price, now,
        ).decisions

    def evaluate_detailed(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        latest_price: Decimal | float | str,
        now: datetime | None = None,
    ) -> MatchResult:
        """Like :meth:`evaluate`, also reporting expired and raced alerts.

        Expired alerts are skipped and left for the expiry sweep.  A
        lost compare-and-swap means another pass already moved the
        alert on; that is a silent no-op.
        """
        etype = EntityType.parse(entity_type)
        price = parse_price(latest_price, "latest_price")
        moment = to_utc(now) if now is not None else utcnow()
        result = MatchResult()

        for alert in self.alerts.active_for_entity(etype, entity_id):
            if alert.is_expired(moment):
                result.expired_ids.append(alert.id)
                continue
            reason = trigger_reason(alert, price)
            if reason is None:
                continue
            try:
                self.alerts.transition(
                    alert.id,
                    AlertStatus.ACTIVE,
                    AlertStatus.TRIGGERED,
                    now=moment,
                    triggered_price=price,
                )
            except ConcurrencyConflict as exc:
                result.conflicts += 1
                logger.debug("Trigger skipped: %s", exc)
                continue

            result.decisions.append(
                AlertDecision(
                    alert_id=alert.id,
                    user_id=alert.user_id,
                    entity_type=alert.entity_type,
                    entity_id=alert.entity_id,
                    entity_name=alert.entity_name,
                    channels=alert.notification_channels,
                    triggered_price=price,
                    previous_price=alert.current_price_at_creation,
                    currency=alert.currency,
                    reason=reason,
                )
            )
            logger.info(
                "Alert %d triggered for user %s on %s/%s at %s (%s)",
                alert.id,
                alert.user_id,
                etype.value,
                entity_id,
                price,
                reason.value,
            )

        if result.expired_ids:
            logger.debug(
                "Flagged %d expired alerts for %s/%s",
                len(result.expired_ids),
                etype.value,
                entity_id,
            )
        return result
