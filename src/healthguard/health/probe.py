"""HTTP health probe for a single service."""

import logging
import time

import httpx

from healthguard.errors import ProbeFailure
from healthguard.models import ServiceHealth, ServiceSpec

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0


class HealthProbe:
    """
    GETs a service health endpoint; any 2xx response is healthy.

    Makes at most max_retries attempts, sleeping retry_delay_seconds between
    failed attempts. A successful attempt returns immediately. check() never
    raises: on exhaustion the result has reachable=False and last_error set.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.retry_delay_seconds = retry_delay_seconds

    def check(self, spec: ServiceSpec) -> ServiceHealth:
        last_error: str | None = None
        status_code: int | None = None
        for attempt in range(1, self.max_retries + 1):
            start = time.monotonic()
            try:
                status_code = self._attempt(spec.url)
                latency_ms = (time.monotonic() - start) * 1000.0
                logger.debug(
                    "%s is healthy",
                    spec.name,
                    extra={"service_name": spec.name, "latency_ms": latency_ms, "attempt": attempt},
                )
                return ServiceHealth(
                    name=spec.name,
                    reachable=True,
                    latency_ms=round(latency_ms, 2),
                    attempts=attempt,
                    status_code=status_code,
                )
            except ProbeFailure as e:
                last_error = str(e)
                status_code = e.status_code
            except Exception as e:  # noqa: BLE001
                last_error = f"{type(e).__name__}: {e}"
                status_code = None
            logger.info(
                "%s health check failed (attempt %s/%s): %s",
                spec.name,
                attempt,
                self.max_retries,
                last_error,
            )
            if attempt < self.max_retries:
                time.sleep(self.retry_delay_seconds)

        logger.warning(
            "%s is unhealthy after %s attempts",
            spec.name,
            self.max_retries,
            extra={"service_name": spec.name, "last_error": last_error},
        )
        return ServiceHealth(
            name=spec.name,
            reachable=False,
            last_error=last_error,
            attempts=self.max_retries,
            status_code=status_code,
        )

    def _attempt(self, url: str) -> int:
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                r = client.get(url)
        except httpx.HTTPError as e:
            raise ProbeFailure(f"{type(e).__name__}: {e}") from e
        if not r.is_success:
            raise ProbeFailure(f"HTTP {r.status_code} from {url}", status_code=r.status_code)
        return r.status_code
