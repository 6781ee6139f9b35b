"""
Resource Stabilization Service — metric-driven wait after a rollout step.

Polls node metrics and compares their averages with a pre-deployment
baseline. A rollout is considered stable once enough consecutive polls stay
within every delta threshold and the minimum wait has elapsed.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import timedelta

from orchestrator.metrics import STABILIZATION_CHECKS, STABILIZATION_OUTCOMES
from orchestrator.schemas.stabilization import ClusterMetricsSnapshot, StabilizationConfig, StabilizationResult
from orchestrator.services.collaborators import MetricsProvider

logger = logging.getLogger(__name__)


def percent_delta(current: float, baseline: float) -> float:
    return abs((current - baseline) / baseline * 100)


class StabilizationService:
    def __init__(
        self,
        metrics_provider: MetricsProvider,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.metrics_provider = metrics_provider
        self._clock = clock
        self._sleep = sleep

    async def wait_for_stabilization(
        self,
        node_ids: Iterable[uuid.UUID],
        baseline: ClusterMetricsSnapshot,
        config: StabilizationConfig,
    ) -> StabilizationResult:
        """Block until the nodes stabilize or the maximum wait is exhausted.

        Cancelling the awaiting task aborts the wait between polls; the
        ``asyncio.CancelledError`` propagates to the caller.
        """
        nodes = list(node_ids)
        if not nodes:
            raise ValueError("At least one node is required to monitor stabilization")
        if min(baseline.avg_cpu_usage, baseline.avg_memory_usage, baseline.avg_latency) <= 0:
            raise ValueError("Baseline metrics must be positive to compute percentage deltas")

        started = self._clock()
        consecutive = 0
        total_checks = 0
        required = config.consecutive_stable_checks

        logger.info(
            "Monitoring %d node(s) for stabilization (min %.0fs, max %.0fs, %d stable checks required)",
            len(nodes),
            config.minimum_wait.total_seconds(),
            config.maximum_wait.total_seconds(),
            required,
        )

        while True:
            elapsed = timedelta(seconds=self._clock() - started)

            if elapsed >= config.maximum_wait:
                logger.warning(
                    "Stabilization timed out after %.1fs (%d/%d consecutive stable checks)",
                    elapsed.total_seconds(),
                    consecutive,
                    required,
                )
                STABILIZATION_OUTCOMES.labels(outcome="timeout").inc()
                return StabilizationResult(
                    is_stable=False,
                    elapsed=elapsed,
                    consecutive_stable_checks=consecutive,
                    timeout_reached=True,
                    total_checks=total_checks,
                    message=f"Maximum timeout reached after {elapsed.total_seconds():.1f}s",
                )

            minimum_wait_reached = elapsed >= config.minimum_wait

            samples = await self.metrics_provider.get_node_metrics(nodes)
            if not samples:
                raise RuntimeError("Metrics provider returned no samples")
            total_checks += 1

            count = len(samples)
            cpu_delta = percent_delta(sum(s.cpu_percent for s in samples) / count, baseline.avg_cpu_usage)
            memory_delta = percent_delta(sum(s.memory_percent for s in samples) / count, baseline.avg_memory_usage)
            latency_delta = percent_delta(sum(s.latency_ms for s in samples) / count, baseline.avg_latency)

            logger.debug(
                "Check #%d: cpu Δ%.1f%% (<= %.1f), memory Δ%.1f%% (<= %.1f), latency Δ%.1f%% (<= %.1f)",
                total_checks,
                cpu_delta,
                config.cpu_delta_threshold,
                memory_delta,
                config.memory_delta_threshold,
                latency_delta,
                config.latency_delta_threshold,
            )

            is_stable = (
                cpu_delta <= config.cpu_delta_threshold
                and memory_delta <= config.memory_delta_threshold
                and latency_delta <= config.latency_delta_threshold
            )
            STABILIZATION_CHECKS.labels(stable=str(is_stable).lower()).inc()

            if is_stable:
                consecutive += 1
                if consecutive >= required and minimum_wait_reached:
                    logger.info(
                        "Resources stabilized after %.1fs (%d checks, %d consecutive stable)",
                        elapsed.total_seconds(),
                        total_checks,
                        consecutive,
                    )
                    STABILIZATION_OUTCOMES.labels(outcome="stable").inc()
                    return StabilizationResult(
                        is_stable=True,
                        elapsed=elapsed,
                        consecutive_stable_checks=consecutive,
                        timeout_reached=False,
                        total_checks=total_checks,
                        message=f"Stabilized after {elapsed.total_seconds():.1f}s",
                    )
            else:
                if consecutive:
                    logger.debug("Metrics unstable, resetting consecutive stable count from %d", consecutive)
                consecutive = 0

            await self._sleep(config.polling_interval.total_seconds())
