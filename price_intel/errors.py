# price_intel/errors.py

"""Exception hierarchy for the price intelligence engine.

"No data yet" conditions are not exceptions: see
:class:`price_intel.models.forecast.InsufficientData` and the empty
:class:`price_intel.models.statistics.StatisticsSnapshot`.
"""


class PriceIntelError(Exception):
    """Base class for all engine errors."""


class ValidationError(PriceIntelError, ValueError):
    """Malformed input to ingestion or alert management."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class StoreUnavailable(PriceIntelError):
    """The observation or alert store could not be reached."""


class ConcurrencyConflict(PriceIntelError):
    """A guarded alert status transition lost the race."""

    def __init__(self, alert_id: int, expected: str) -> None:
        super().__init__(
            f"Alert {alert_id} was no longer {expected}"
        )
        self.alert_id = alert_id
        self.expected = expected


class NotificationDeliveryError(PriceIntelError):
    """The delivery capability failed for a triggered alert."""

    def __init__(self, alert_id: int, message: str) -> None:
        super().__init__(f"Delivery failed for alert {alert_id}: {message}")
        self.alert_id = alert_id


class CollectorError(PriceIntelError):
    """A price collector could not produce an observation."""
