"""请求路由 - 记录需求，确保模型至少有一个 worker，返回可转发的 worker。"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from orchestrator.common.errors import ProvisioningError, RuntimeOperationError
from orchestrator.common.models import Worker
from orchestrator.serve.demand import DemandTracker
from orchestrator.serve.registry import WorkerRegistry
from orchestrator.worker.runtime import ContainerRuntime, call_runtime

logger = logging.getLogger(__name__)


class RequestRouter:
    def __init__(
        self,
        registry: WorkerRegistry,
        demand: DemandTracker,
        runtime: ContainerRuntime,
        runtime_timeout_s: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.demand = demand
        self.runtime = runtime
        self.runtime_timeout_s = runtime_timeout_s

    async def route(self, model: str) -> Worker:
        """Return a worker for `model`, provisioning the first one if needed.

        Raises ProvisioningError when the pool is empty and the start fails;
        the failure is not retried here, the next request tries again.
        """
        self.demand.record(model)

        worker = await self.registry.pick_worker(model)
        if worker is not None:
            return worker

        async with self.registry.model_lock(model):
            # 并发请求可能已在我们等锁时完成了启动
            worker = await self.registry.pick_worker(model)
            if worker is not None:
                return worker
            return await self._provision(model)

    async def _provision(self, model: str) -> Worker:
        port = self.registry.allocate_port()
        logger.info("No worker for %s, provisioning on port %s", model, port)
        try:
            await call_runtime(self.runtime.start(model, port), self.runtime_timeout_s)
        except asyncio.TimeoutError as exc:
            logger.error("Starting %s on port %s timed out", model, port)
            raise ProvisioningError(model, RuntimeOperationError("start", model, port, "timeout")) from exc
        except RuntimeOperationError as exc:
            logger.error("Failed to provision %s: %s", model, exc)
            raise ProvisioningError(model, exc) from exc
        except Exception as exc:
            logger.error("Failed to provision %s: %r", model, exc, exc_info=True)
            raise ProvisioningError(model, RuntimeOperationError("start", model, port, repr(exc))) from exc
        return await self.registry.add_worker(model, port)

    async def list_active_models(self) -> List[str]:
        return await self.registry.list_models()

    async def unregister_model(self, model: str) -> Dict:
        """Stop every worker of `model`; workers whose stop fails stay registered."""
        stopped: List[int] = []
        failed: List[int] = []
        async with self.registry.model_lock(model):
            workers = await self.registry.list_workers(model)
            if not workers:
                return {"status": "error", "message": f"Model {model} not found"}
            for w in workers:
                await self.registry.mark_draining(model, w.port)
            for w in reversed(workers):
                try:
                    await call_runtime(self.runtime.stop(model, w.port), self.runtime_timeout_s)
                except Exception as exc:
                    logger.warning("Failed to stop %s on port %s: %r", model, w.port, exc)
                    await self.registry.mark_running(model, w.port)
                    failed.append(w.port)
                    continue
                await self.registry.remove_worker(model, w.port)
                stopped.append(w.port)
        if failed:
            return {
                "status": "partial",
                "message": f"Model {model}: {len(failed)} worker(s) failed to stop",
                "stopped": stopped,
                "failed": failed,
            }
        return {"status": "success", "message": f"Model {model} unregistered", "stopped": stopped}
