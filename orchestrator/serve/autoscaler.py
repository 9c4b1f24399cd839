"""Demand- and GPU-based autoscaler for per-model Ollama workers."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from orchestrator.common.config import OrchestratorConfig
from orchestrator.common.metrics import MetricsProbe
from orchestrator.common.models import ScalingDecision, ScalingMetrics, ScalingReport, WorkerState
from orchestrator.serve.demand import DemandTracker
from orchestrator.serve.registry import WorkerRegistry
from orchestrator.worker.runtime import ContainerRuntime, call_runtime

logger = logging.getLogger(__name__)

# 活跃模型始终保留的最少 worker 数，优先于显存上限
MIN_WORKERS_PER_ACTIVE_MODEL = 1


@dataclass(frozen=True)
class ScalingPolicy:
    gpu_util_threshold_pct: float = 70.0
    request_threshold: int = 10
    request_divisor: int = 5
    per_model_vram_mb: float = 4000.0
    vram_headroom: float = 0.9

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "ScalingPolicy":
        return cls(
            gpu_util_threshold_pct=config.gpu_util_threshold_pct,
            request_threshold=config.request_threshold,
            request_divisor=config.request_divisor,
            per_model_vram_mb=config.per_model_vram_mb,
            vram_headroom=config.vram_headroom,
        )


def max_workers_by_vram(metrics: ScalingMetrics, policy: ScalingPolicy) -> int:
    return math.floor(metrics.vram_used_mb * policy.vram_headroom / policy.per_model_vram_mb)


def desired_worker_count(
    requests: int,
    metrics: ScalingMetrics,
    policy: ScalingPolicy = ScalingPolicy(),
) -> int:
    """Raw desired count for one model; may be 0 when the VRAM cap is 0.

    The one-worker floor for active models is applied when reconciling,
    not here.
    """
    base = 1
    if metrics.gpu_utilization_pct > policy.gpu_util_threshold_pct:
        base += 1
    if requests > policy.request_threshold:
        base += requests // policy.request_divisor
    cap = max_workers_by_vram(metrics, policy)
    if cap <= 0:
        return 0
    return min(base, cap)


class DemandBasedAutoscaler:
    """Periodically reconciles each active model's pool to its desired size.

    Cycles run on a single track: a tick that comes due while a cycle is
    still running is skipped, and so is a manual trigger.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        demand: DemandTracker,
        runtime: ContainerRuntime,
        probe: MetricsProbe,
        policy: ScalingPolicy = ScalingPolicy(),
        check_interval: float = 30.0,
        runtime_timeout_s: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.demand = demand
        self.runtime = runtime
        self.probe = probe
        self.policy = policy
        self.check_interval = check_interval
        self.runtime_timeout_s = runtime_timeout_s
        self.last_report: Optional[ScalingReport] = None
        self.skipped_ticks = 0
        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("autoscaler: started, interval=%.1fs", self.check_interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("autoscaler: stopped")

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.check_interval
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            await self.run_once()
            next_tick += self.check_interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // self.check_interval) + 1
                next_tick += missed * self.check_interval
                self.skipped_ticks += missed
                logger.warning("autoscaler: cycle overran, skipped %d tick(s)", missed)

    async def run_once(self) -> Optional[ScalingReport]:
        """Run one scaling cycle; returns None if a cycle is already running."""
        if self._cycle_lock.locked():
            self.skipped_ticks += 1
            logger.info("autoscaler: cycle already running, skip")
            return None
        async with self._cycle_lock:
            try:
                return await self._scale()
            except Exception as exc:
                logger.warning("Autoscaler loop error: %s", exc, exc_info=True)
                return None

    async def _scale(self) -> ScalingReport:
        metrics = await self.probe.read()
        demand = self.demand.drain()
        report = ScalingReport(started_at=time.time(), metrics=metrics)

        for model in await self.registry.list_models():
            try:
                decision = await self._reconcile(model, demand.get(model, 0), metrics)
            except Exception as exc:
                logger.warning("autoscaler: model=%s reconcile error: %s", model, exc, exc_info=True)
                continue
            if decision is not None:
                report.decisions[model] = decision

        report.finished_at = time.time()
        self.last_report = report
        return report

    async def _reconcile(
        self,
        model: str,
        requests: int,
        metrics: ScalingMetrics,
    ) -> Optional[ScalingDecision]:
        async with self.registry.model_lock(model):
            workers = await self.registry.worker_count(model)
            if workers == 0:
                # 周期开始后被整体注销
                return None
            desired = desired_worker_count(requests, metrics, self.policy)
            decision = ScalingDecision(model=model, requests=requests, workers=workers, desired=desired)
            detail = (
                f"requests={requests} workers={workers} desired={desired} "
                f"gpu={metrics.gpu_utilization_pct:.1f}% vram={metrics.vram_used_mb:.0f}MB"
            )

            if desired > workers:
                logger.info("autoscaler: model=%s %s -> scale up +%d", model, detail, desired - workers)
                await self._scale_up(model, desired - workers, decision)
            elif desired < workers:
                # 下限按可路由（running）的 worker 计算
                running = await self.registry.running_count(model)
                count = min(
                    workers - max(desired, MIN_WORKERS_PER_ACTIVE_MODEL),
                    running - MIN_WORKERS_PER_ACTIVE_MODEL,
                )
                if count <= 0:
                    logger.info("autoscaler: model=%s %s -> keep last worker", model, detail)
                else:
                    logger.info("autoscaler: model=%s %s -> scale down -%d", model, detail, count)
                    await self._scale_down(model, count, decision)
            else:
                logger.debug("autoscaler: model=%s %s -> steady", model, detail)
            return decision

    async def _scale_up(self, model: str, count: int, decision: ScalingDecision) -> None:
        for _ in range(count):
            port = self.registry.allocate_port()
            try:
                await call_runtime(self.runtime.start(model, port), self.runtime_timeout_s)
            except Exception as exc:
                # 本周期内不再为该模型继续扩容，下个周期自然重试
                logger.warning("Failed to scale up %s on port %s: %r", model, port, exc)
                decision.failed.append(port)
                return
            await self.registry.add_worker(model, port)
            decision.started.append(port)
        logger.info(
            "autoscaler: model=%s scaled up to %d workers",
            model,
            await self.registry.worker_count(model),
        )

    async def _scale_down(self, model: str, count: int, decision: ScalingDecision) -> None:
        workers = await self.registry.list_workers(model)
        # 最近加入的优先停止（LIFO）
        candidates = [w for w in reversed(workers) if w.state == WorkerState.RUNNING][:count]
        for w in candidates:
            await self.registry.mark_draining(model, w.port)

        for w in candidates:
            try:
                await call_runtime(self.runtime.stop(model, w.port), self.runtime_timeout_s)
            except Exception as exc:
                # 停止失败：保留注册并恢复路由，下个周期重试
                logger.warning("Failed to scale down %s on port %s: %r", model, w.port, exc)
                await self.registry.mark_running(model, w.port)
                decision.failed.append(w.port)
                continue
            await self.registry.remove_worker(model, w.port)
            decision.stopped.append(w.port)
        logger.info(
            "autoscaler: model=%s scaled down to %d workers",
            model,
            await self.registry.worker_count(model),
        )
