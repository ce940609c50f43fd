"""
Health monitoring for live sites.

A probe is one timed GET of the site URL, scored on three axes:

- connectivity, from the HTTP status class
- performance, from the response time
- functionality, from heuristic checks on the returned page

The weighted average decides the sample status. ``MonitoringSession`` samples
a site on a timer for the length of one monitoring window.
"""
import asyncio
import logging
from typing import Dict, Optional

import httpx

from patchdeploy.core.config import settings
from patchdeploy.models.deployment import HealthSample, HealthStatus
from patchdeploy.utils.http.client import HttpClientConfig, HttpResponse, timed_get

logger = logging.getLogger(__name__)

ERROR_MARKERS = ("Fatal error", "Internal Server Error", "Liquid error", "Parse error")
PAGE_MARKERS = ("<html", "<body")


class HealthScorer:
    """Turns one HTTP response into a scored health sample."""

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        healthy_threshold: Optional[float] = None,
        warning_threshold: Optional[float] = None,
        fast_response_ms: Optional[float] = None,
        slow_response_ms: Optional[float] = None,
        min_content_length: Optional[int] = None,
    ):
        self.weights = weights or settings.health_weights
        self.healthy_threshold = healthy_threshold if healthy_threshold is not None else settings.HEALTHY_SCORE_THRESHOLD
        self.warning_threshold = warning_threshold if warning_threshold is not None else settings.WARNING_SCORE_THRESHOLD
        self.fast_response_ms = fast_response_ms if fast_response_ms is not None else settings.FAST_RESPONSE_MS
        self.slow_response_ms = slow_response_ms if slow_response_ms is not None else settings.SLOW_RESPONSE_MS
        self.min_content_length = min_content_length if min_content_length is not None else settings.MIN_CONTENT_LENGTH

    def classify(self, overall_score: float) -> HealthStatus:
        if overall_score >= self.healthy_threshold:
            return HealthStatus.HEALTHY
        if overall_score >= self.warning_threshold:
            return HealthStatus.WARNING
        return HealthStatus.CRITICAL

    @staticmethod
    def connectivity_score(status_code: int) -> float:
        if 200 <= status_code < 300:
            return 100
        if 300 <= status_code < 400:
            return 80
        if 400 <= status_code < 500:
            return 40
        if status_code >= 500:
            return 10
        return 0

    def performance_score(self, response_time_ms: float) -> float:
        if response_time_ms <= self.fast_response_ms:
            return 100
        if response_time_ms >= self.slow_response_ms:
            return 0
        span = self.slow_response_ms - self.fast_response_ms
        return round(100 * (self.slow_response_ms - response_time_ms) / span, 2)

    def functionality_score(self, body: str) -> float:
        score = 100
        if len(body.encode("utf-8")) < self.min_content_length:
            score -= 40
        lowered = body.lower()
        if not any(marker in lowered for marker in PAGE_MARKERS):
            score -= 30
        if any(marker in body for marker in ERROR_MARKERS):
            score -= 50
        return max(score, 0)

    def overall_score(self, connectivity: float, performance: float, functionality: float) -> float:
        total_weight = sum(self.weights.values())
        if total_weight <= 0:
            return 0
        weighted = (
            connectivity * self.weights.get("connectivity", 0)
            + performance * self.weights.get("performance", 0)
            + functionality * self.weights.get("functionality", 0)
        )
        return round(weighted / total_weight, 2)

    def failed_sample(self, error: str, response_time_ms: Optional[float] = None) -> HealthSample:
        return HealthSample(status=HealthStatus.CRITICAL, response_time_ms=response_time_ms, error=error)

    def score(self, response: HttpResponse) -> HealthSample:
        if response.error is not None or response.status_code == 0:
            return self.failed_sample(response.error or "No response", response.elapsed_ms)

        connectivity = self.connectivity_score(response.status_code)
        performance = self.performance_score(response.elapsed_ms)
        functionality = self.functionality_score(response.text)
        overall = self.overall_score(connectivity, performance, functionality)
        return HealthSample(
            connectivity_score=connectivity,
            performance_score=performance,
            functionality_score=functionality,
            overall_score=overall,
            status=self.classify(overall),
            status_code=response.status_code,
            response_time_ms=round(response.elapsed_ms, 2),
        )


class HealthChecker:
    """Probes a site once and returns a scored sample. Never raises."""

    def __init__(
        self,
        scorer: Optional[HealthScorer] = None,
        timeout: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.scorer = scorer or HealthScorer()
        self.timeout = timeout or settings.HEALTH_REQUEST_TIMEOUT_SECONDS
        self.http_transport = http_transport

    async def check(self, site_url: str) -> HealthSample:
        try:
            response = await timed_get(
                site_url,
                config=HttpClientConfig(timeout=self.timeout, transport=self.http_transport),
            )
            sample = self.scorer.score(response)
        except Exception as e:
            logger.error(f"Health check of {site_url} failed: {str(e)}")
            sample = self.scorer.failed_sample(str(e) or e.__class__.__name__)

        logger.info(f"Health of {site_url}: {sample.status.value} ({sample.overall_score})")
        return sample


class MonitoringSession:
    """
    Periodic sampling of one deployment's site.

    Samples are delivered in order through ``next_sample``; a final ``None``
    marks the end of the window. ``stop`` cancels the timer task immediately.
    """

    def __init__(
        self,
        deployment_id: str,
        site_url: str,
        checker: HealthChecker,
        interval: Optional[float] = None,
        window: Optional[float] = None,
    ):
        self.deployment_id = deployment_id
        self.site_url = site_url
        self.checker = checker
        self.interval = interval if interval is not None else settings.HEALTH_CHECK_INTERVAL_SECONDS
        self.window = window if window is not None else settings.MONITORING_WINDOW_SECONDS
        self.samples_taken = 0
        self._queue: "asyncio.Queue[Optional[HealthSample]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"monitor-{self.deployment_id}")
            logger.info(
                f"Monitoring {self.site_url} for deployment {self.deployment_id} "
                f"every {self.interval}s for {self.window}s"
            )

    async def next_sample(self) -> Optional[HealthSample]:
        """Wait for the next sample; None once the window has expired."""
        return await self._queue.get()

    async def stop(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        logger.info(f"Stopped monitoring for deployment {self.deployment_id} after {self.samples_taken} samples")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.window
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining < self.interval:
                    await asyncio.sleep(max(remaining, 0))
                    break
                await asyncio.sleep(self.interval)
                sample = await self.checker.check(self.site_url)
                self.samples_taken += 1
                self._queue.put_nowait(sample)
        finally:
            self._queue.put_nowait(None)
