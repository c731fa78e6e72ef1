"""Reachability probing of cloud endpoints."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import requests

from .config import ConnectivityConfig
from .errors import ConnectivityError

logger = logging.getLogger(__name__)


@dataclass
class EndpointProbe:
    """Outcome of probing one endpoint."""

    url: str
    reachable: bool
    attempts: int
    status_code: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None


def endpoint_url(endpoint: str) -> str:
    """Normalize ``host[:port]`` to an HTTPS URL; URLs pass through."""
    if "://" in endpoint:
        return endpoint
    return f"https://{endpoint}"


class ConnectivityChecker:
    """Blocking reachability probe with bounded, linear-backoff retries.

    Every endpoint must answer with a 2xx or 3xx status; partial
    reachability is a failure.
    """

    def __init__(
        self,
        config: Optional[ConnectivityConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize connectivity checker.

        Args:
            config: Probe configuration
            session: HTTP session (a new one is created if omitted)
            sleep: Sleep function used between attempts
        """
        self.config = config or ConnectivityConfig()
        self.session = session or requests.Session()
        self._sleep = sleep

    def check_reachable(self, endpoints: Optional[Iterable[str]] = None) -> list[EndpointProbe]:
        """Probe every endpoint.

        Args:
            endpoints: URLs or ``host[:port]`` values (default: configured endpoints)

        Returns:
            One probe result per endpoint, all reachable

        Raises:
            ConnectivityError: Naming the first endpoint that stayed unreachable
        """
        targets = [endpoint_url(e) for e in (endpoints if endpoints is not None else self.config.endpoints)]
        if not targets:
            raise ConnectivityError("<none>", "no endpoints configured")

        logger.info("Starting connectivity check of %d endpoint(s)", len(targets))
        results = []
        for url in targets:
            probe = self.probe(url)
            if not probe.reachable:
                logger.error("Endpoint %s unreachable after %d attempt(s): %s", url, probe.attempts, probe.error)
                raise ConnectivityError(url, f"{probe.error} after {probe.attempts} attempt(s)")
            results.append(probe)

        logger.info("Connectivity check passed")
        return results

    def probe(self, url: str) -> EndpointProbe:
        """Probe one URL, retrying up to the configured attempt count."""
        error = None
        status_code = None

        for attempt in range(1, self.config.attempts + 1):
            start = time.monotonic()
            try:
                response = self.session.request(
                    self.config.probe_method,
                    url,
                    timeout=self.config.timeout_seconds,
                    allow_redirects=False,
                )
                response.close()
            except requests.RequestException as e:
                error = f"{type(e).__name__}: {e}"
                logger.debug("Attempt %d to %s failed: %s", attempt, url, error)
            else:
                status_code = response.status_code
                latency_ms = (time.monotonic() - start) * 1000.0
                if 200 <= status_code < 400:
                    logger.debug("Reached %s (HTTP %d) in %.0fms", url, status_code, latency_ms)
                    return EndpointProbe(
                        url=url,
                        reachable=True,
                        attempts=attempt,
                        status_code=status_code,
                        latency_ms=latency_ms,
                    )
                error = f"HTTP {status_code}"
                logger.debug("Attempt %d to %s returned HTTP %d", attempt, url, status_code)

            if attempt < self.config.attempts:
                self._sleep(self.config.backoff_seconds * attempt)

        return EndpointProbe(
            url=url,
            reachable=False,
            attempts=self.config.attempts,
            status_code=status_code,
            error=error,
        )
