"""
Health Check Probes

Bounded-timeout HTTP probes against external endpoints. A probe never
touches flag state; failures are reported back to the aggregator, which
turns them into alerts and exposes the failure count to rollback triggers.
"""
from typing import Dict, List, Optional, Any
from enum import Enum
import asyncio

import aiohttp

from logger import get_logger
from deployment.exceptions import ExternalProbeError
from deployment.models import HealthCheck, HealthCheckResult, utcnow

logger = get_logger(__name__)


class HealthStatus(Enum):
    """Overall health levels"""
    HEALTHY = "healthy"           # Every probe passing
    DEGRADED = "degraded"         # Some probes failing
    UNHEALTHY = "unhealthy"       # Every probe failing
    UNKNOWN = "unknown"           # Nothing probed yet


class HttpProbeClient:
    """HTTP client abstraction used by health checks"""

    async def probe(self, method: str, url: str, timeout_seconds: float) -> int:
        """
        Issue the request and return the response status code

        Raises:
            asyncio.TimeoutError: the probe exceeded its timeout
            ExternalProbeError: the endpoint could not be reached
        """
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method.upper(), url) as response:
                    return response.status
        except aiohttp.ClientError as e:
            raise ExternalProbeError(f"Endpoint unreachable: {e}", target=url, original_error=e)


class HealthCheckRunner:
    """
    Runs registered health checks and tracks consecutive failures

    Example:
        runner = HealthCheckRunner()
        runner.register(HealthCheck(name="api", endpoint="https://example.com/api/health",
                                    timeout_seconds=5, interval_seconds=60))

        result = await runner.run(runner.get_check("api"))
        if not result.healthy:
            print(result.message)
    """

    def __init__(self, client: Optional[HttpProbeClient] = None):
        self.client = client or HttpProbeClient()
        self._checks: Dict[str, HealthCheck] = {}
        self._results: Dict[str, HealthCheckResult] = {}
        self._consecutive_failures: Dict[str, int] = {}

    def register(self, check: HealthCheck):
        if check.name in self._checks:
            logger.warning(f"Overwriting existing health check: {check.name}")

        self._checks[check.name] = check
        self._consecutive_failures.setdefault(check.name, 0)

        logger.info(
            f"Registered health check: {check.name} "
            f"({check.method} {check.endpoint}, interval={check.interval_seconds}s, "
            f"timeout={check.timeout_seconds}s)"
        )

    def unregister(self, name: str):
        if name in self._checks:
            del self._checks[name]
            self._results.pop(name, None)
            self._consecutive_failures.pop(name, None)
            logger.info(f"Unregistered health check: {name}")

    def get_check(self, name: str) -> Optional[HealthCheck]:
        return self._checks.get(name)

    def list_checks(self) -> List[HealthCheck]:
        return list(self._checks.values())

    async def run(self, check: HealthCheck) -> HealthCheckResult:
        """Probe once; never raises"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        status_code = None

        try:
            status_code = await asyncio.wait_for(
                self.client.probe(check.method, check.endpoint, check.timeout_seconds),
                timeout=check.timeout_seconds
            )
            if status_code == check.expected_status:
                healthy, message = True, f"{check.method} {check.endpoint} returned {status_code}"
            else:
                healthy = False
                message = (
                    f"{check.method} {check.endpoint} returned {status_code}, "
                    f"expected {check.expected_status}"
                )
        except asyncio.TimeoutError:
            healthy, message = False, f"Health check timed out after {check.timeout_seconds}s"
        except ExternalProbeError as e:
            healthy, message = False, str(e)
        except Exception as e:
            healthy, message = False, f"Health check failed: {e}"

        result = HealthCheckResult(
            name=check.name,
            healthy=healthy,
            message=message,
            status_code=status_code,
            duration_ms=(loop.time() - start_time) * 1000,
            checked_at=utcnow()
        )

        self._results[check.name] = result
        if healthy:
            self._consecutive_failures[check.name] = 0
        else:
            self._consecutive_failures[check.name] = self._consecutive_failures.get(check.name, 0) + 1

        logger.debug(
            f"Health check {check.name}: {'healthy' if healthy else 'unhealthy'} "
            f"({result.duration_ms:.2f}ms)"
        )
        return result

    def consecutive_failures(self, name: str) -> int:
        return self._consecutive_failures.get(name, 0)

    def failure_count(self) -> int:
        """Sum of consecutive failures across all registered checks"""
        return sum(
            count for name, count in self._consecutive_failures.items()
            if name in self._checks
        )

    def get_health_status(self) -> Dict[str, Any]:
        """Overall status and per-check details"""
        results = [r for name, r in self._results.items() if name in self._checks]

        if not results:
            overall = HealthStatus.UNKNOWN
        elif all(r.healthy for r in results):
            overall = HealthStatus.HEALTHY
        elif not any(r.healthy for r in results):
            overall = HealthStatus.UNHEALTHY
        else:
            overall = HealthStatus.DEGRADED

        return {
            "overall_status": overall.value,
            "checks": {
                r.name: {**r.to_dict(), "consecutive_failures": self.consecutive_failures(r.name)}
                for r in results
            },
            "summary": {
                "total_checks": len(self._checks),
                "healthy": sum(1 for r in results if r.healthy),
                "unhealthy": sum(1 for r in results if not r.healthy),
            }
        }
