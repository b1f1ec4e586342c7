"""
Dev Server Health Probe

HEAD request against the dev server's preview URL with a short timeout.
Any network error, timeout or non-2xx status counts as unreachable;
the probe never raises.
"""

import time
from typing import Optional

import httpx

from sandbox_relay.core.config import settings
from sandbox_relay.core.logging_config import logger


class HealthProbe:
    """Bounded-latency reachability check"""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout if timeout is not None else settings.HEALTH_PROBE_TIMEOUT
        self._transport = transport

    async def probe(self, url: str) -> bool:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                response = await client.head(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.info(f"[HealthProbe] {url} unreachable: {type(e).__name__}: {e}")
            return False

        latency = (time.perf_counter() - start) * 1000
        healthy = response.is_success
        logger.debug(f"[HealthProbe] {url} -> {response.status_code} ({latency:.0f}ms)")
        if not healthy:
            logger.info(f"[HealthProbe] {url} unhealthy: HTTP {response.status_code}")
        return healthy


# Global instance
health_probe = HealthProbe()
