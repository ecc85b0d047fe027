# price_intel/collectors/base_collector.py

"""Abstract base class for price collectors."""

import logging
import time
from abc import ABC, abstractmethod

from curl_cffi import requests as curl_requests

from price_intel.config.settings import Settings
from price_intel.models.observation import EntityType, PriceObservation


class BaseCollector(ABC):
    """Fetches the current price of an entity from one upstream source.

    HTTP calls go through a browser-impersonating ``curl_cffi``
    session with retries, adaptive back-off on 429/403 and a circuit
    breaker that stops hammering a source that keeps failing.
    """

    def __init__(self, source_name: str) -> None:
        self.source_name = source_name
        self.logger = logging.getLogger(
            f"price_intel.collectors.{source_name}"
        )
        self.settings = Settings()
        self.session = curl_requests.Session(
            impersonate=self.settings.IMPERSONATE_BROWSER
        )
        self._current_delay: float = self.settings.REQUEST_DELAY
        self._consecutive_failures: int = 0
        self._circuit_open: bool = False
        self._circuit_opened_at: float = 0.0
        self._request_timeout: int = self.settings.REQUEST_TIMEOUT

    # ── Circuit breaker ──────────────────────────────────

    def _check_circuit(self) -> bool:
        """Return True while the breaker blocks requests.

        After the cooldown the breaker half-opens and lets one probe
        through.
        """
        if not self._circuit_open:
            return False
        elapsed = time.time() - self._circuit_opened_at
        if elapsed >= self.settings.CIRCUIT_BREAKER_COOLDOWN:
            self.logger.info(
                "[%s] Circuit breaker half-open after %.0fs",
                self.source_name,
                elapsed,
            )
            self._circuit_open = False
            return False
        return True

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        self._circuit_open = False
        self._circuit_opened_at = 0.0
        self._current_delay = self.settings.REQUEST_DELAY

    def _record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures >= self.settings.CIRCUIT_BREAKER_THRESHOLD:
            self._circuit_open = True
            self._circuit_opened_at = time.time()
            self.logger.error(
                "[%s] Circuit breaker opened after %d consecutive failures",
                self.source_name,
                self._consecutive_failures,
            )

    def _escalate_delay(self) -> None:
        """Double the retry delay, capped at the configured multiple."""
        max_delay = (
            self.settings.REQUEST_DELAY * self.settings.MAX_DELAY_MULTIPLIER
        )
        self._current_delay = min(self._current_delay * 2, max_delay)
        self.logger.warning(
            "[%s] Rate-limited, delay escalated to %.1fs",
            self.source_name,
            self._current_delay,
        )

    # ── HTTP ─────────────────────────────────────────────

    def _fetch_get(
        self, url: str, allow_404: bool = True,
    ) -> curl_requests.Response | None:
        """GET with retries; ``None`` when the source gave up or has no data.

        A 404 is a definitive "no price" answer and is not retried.
        """
        if self._check_circuit():
            return None
        headers = dict(self.settings.DEFAULT_HEADERS)
        for attempt in range(self.settings.MAX_RETRIES):
            try:
                resp = self.session.get(
                    url, headers=headers, timeout=self._request_timeout,
                )
                if resp.status_code == 200:
                    self._record_success()
                    return resp
                if resp.status_code == 404 and allow_404:
                    self._record_success()
                    return None
                self.logger.warning(
                    "[%s] HTTP %d on attempt %d",
                    self.source_name,
                    resp.status_code,
                    attempt + 1,
                )
                if resp.status_code in (429, 403):
                    self._escalate_delay()
                time.sleep(self._current_delay)
            except Exception as exc:
                self.logger.warning(
                    "[%s] Request error on attempt %d: %s",
                    self.source_name,
                    attempt + 1,
                    exc,
                    exc_info=True,
                )
                time.sleep(self._current_delay * (attempt + 1))
        self._record_failure()
        return None

    @property
    def circuit_open(self) -> bool:
        """Whether the breaker currently blocks this source."""
        return self._check_circuit()

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the collector has what it needs to run."""
        ...

    @abstractmethod
    def probe_url(self) -> str:
        """URL used by the connectivity health check."""
        ...

    @abstractmethod
    def collect(
        self, entity_type: EntityType, entity_id: str,
    ) -> PriceObservation | None:
        """Current price of an entity, or ``None`` if the source has none.

        Raises :class:`~price_intel.errors.CollectorError` when the
        source could not be reached.
        """
        ...
