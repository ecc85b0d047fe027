# price_intel/collectors/feed_collector.py

"""Collector for a JSON price feed keyed by entity type and id."""

from datetime import datetime
from typing import Any

from price_intel.collectors.base_collector import BaseCollector
from price_intel.errors import CollectorError, ValidationError
from price_intel.models.observation import EntityType, PriceObservation
from price_intel.storage.database import utcnow


class FeedCollector(BaseCollector):
    """Reads ``{feed}/{type}/{id}`` and expects a JSON quote.

    Expected body::

        {"price": 1234.5, "currency": "EUR",
         "observed_at": "2026-01-01T10:00:00+00:00"}

    ``observed_at`` is optional and defaults to the fetch time.
    """

    def __init__(self, feed_url: str | None = None) -> None:
        super().__init__("price_feed")
        self.feed_url = (feed_url or self.settings.PRICE_FEED_URL).rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.feed_url)

    def probe_url(self) -> str:
        return self.feed_url

    def _quote_url(self, entity_type: EntityType, entity_id: str) -> str:
        return f"{self.feed_url}/{entity_type.value.lower()}/{entity_id}"

    @staticmethod
    def _parse_quote(
        body: dict[str, Any],
        entity_type: EntityType,
        entity_id: str,
        source: str,
    ) -> PriceObservation:
        """Map a feed quote onto an observation."""
        raw_ts = body.get("observed_at")
        observed_at = (
            datetime.fromisoformat(str(raw_ts)) if raw_ts else utcnow()
        )
        return PriceObservation.from_dict({
            "entity_type": entity_type,
            "entity_id": entity_id,
            "price": body.get("price"),
            "currency": body.get("currency", ""),
            "observed_at": observed_at,
            "source": source,
        })

    def collect(
        self, entity_type: EntityType, entity_id: str,
    ) -> PriceObservation | None:
        if not self.is_configured():
            raise CollectorError("Price feed URL is not configured")
        url = self._quote_url(entity_type, entity_id)
        if self.circuit_open:
            raise CollectorError(f"[{self.source_name}] circuit open")
        resp = self._fetch_get(url)
        if resp is None:
            if self._consecutive_failures:
                raise CollectorError(
                    f"[{self.source_name}] no response for {url}"
                )
            self.logger.info(
                "[%s] No quote for %s/%s",
                self.source_name,
                entity_type.value,
                entity_id,
            )
            return None

        try:
            body = resp.json()
        except ValueError as exc:
            raise CollectorError(
                f"[{self.source_name}] invalid JSON from {url}"
            ) from exc
        if not isinstance(body, dict) or body.get("price") is None:
            self.logger.info(
                "[%s] Empty quote for %s/%s",
                self.source_name,
                entity_type.value,
                entity_id,
            )
            return None
        try:
            return self._parse_quote(
                body, entity_type, entity_id, self.source_name,
            )
        except (ValidationError, ValueError) as exc:
            raise CollectorError(
                f"[{self.source_name}] malformed quote: {exc}"
            ) from exc
