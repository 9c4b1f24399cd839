"""Worker 注册表 - 每个模型正在运行的 worker 及端口分配的唯一数据源。

锁约定：
- `_lock` 保护 `model_workers` / `_rr_counters` 等状态，只在短小的读写中持有，
  绝不跨越容器运行时调用；
- `model_lock(model)` 是按模型的互斥域，路由的 "检查-再-启动" 与扩缩容的
  "读取-决策-执行" 都在其中完成，保证同一模型不会针对同一决策重复启动 worker。
"""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import threading
import time
from typing import AsyncIterator, Dict, List, Optional

from orchestrator.common.models import Worker, WorkerState

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """管理每个模型的 worker 列表（按加入顺序）与端口分配器。"""

    def __init__(self, base_port: int = 11434, worker_host: str = "localhost") -> None:
        self.worker_host = worker_host
        self.model_workers: Dict[str, List[Worker]] = {}
        self._rr_counters: Dict[str, int] = {}
        # model -> [lock, 持有或等待者数量]；无 worker 且无人使用时回收
        self._model_locks: Dict[str, list] = {}
        self._lock = asyncio.Lock()
        # 端口只增不减，停止的 worker 的端口不回收
        self._ports = itertools.count(base_port)
        self._port_lock = threading.Lock()

    def allocate_port(self) -> int:
        with self._port_lock:
            return next(self._ports)

    @contextlib.asynccontextmanager
    async def model_lock(self, model: str) -> AsyncIterator[None]:
        entry = self._model_locks.get(model)
        if entry is None:
            entry = self._model_locks[model] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0 and not self.model_workers.get(model):
                self._model_locks.pop(model, None)

    async def list_models(self) -> List[str]:
        async with self._lock:
            return [m for m, workers in self.model_workers.items() if workers]

    async def list_workers(self, model: str) -> List[Worker]:
        async with self._lock:
            return list(self.model_workers.get(model, []))

    async def worker_count(self, model: str) -> int:
        async with self._lock:
            return len(self.model_workers.get(model, []))

    async def running_count(self, model: str) -> int:
        async with self._lock:
            return sum(1 for w in self.model_workers.get(model, []) if w.state == WorkerState.RUNNING)

    async def add_worker(self, model: str, port: int) -> Worker:
        worker = Worker(model=model, port=port, started_at=time.time(), host=self.worker_host)
        async with self._lock:
            for workers in self.model_workers.values():
                if any(w.port == port for w in workers):
                    raise ValueError(f"port {port} already registered")
            self.model_workers.setdefault(model, []).append(worker)
            count = len(self.model_workers[model])
        logger.info("Registered worker %s for %s (%d total)", worker.endpoint, model, count)
        return worker

    async def remove_worker(self, model: str, port: int) -> Optional[Worker]:
        async with self._lock:
            workers = self.model_workers.get(model)
            if not workers:
                return None
            removed = next((w for w in workers if w.port == port), None)
            if removed is None:
                return None
            workers.remove(removed)
            if not workers:
                self.model_workers.pop(model, None)
                self._rr_counters.pop(model, None)
            count = len(workers)
        logger.info("Removed worker %s for %s (%d left)", removed.endpoint, model, count)
        return removed

    async def _set_state(self, model: str, port: int, state: WorkerState) -> bool:
        async with self._lock:
            for w in self.model_workers.get(model, []):
                if w.port == port:
                    w.state = state
                    return True
        return False

    async def mark_draining(self, model: str, port: int) -> bool:
        return await self._set_state(model, port, WorkerState.DRAINING)

    async def mark_running(self, model: str, port: int) -> bool:
        return await self._set_state(model, port, WorkerState.RUNNING)

    def _pick_running_worker(self, model: str, running: List[Worker]) -> Worker:
        idx = self._rr_counters.get(model, 0)
        if idx >= len(running):
            idx = 0
        self._rr_counters[model] = (idx + 1) % len(running)
        return running[idx]

    async def pick_worker(self, model: str) -> Optional[Worker]:
        """轮询选择一个 running 状态的 worker；没有则返回 None。"""
        async with self._lock:
            running = [
                w for w in self.model_workers.get(model, [])
                if w.state == WorkerState.RUNNING
            ]
            if not running:
                return None
            return self._pick_running_worker(model, running)

    async def snapshot(self) -> Dict:
        async with self._lock:
            return {
                model: [w.to_dict() for w in workers]
                for model, workers in self.model_workers.items()
            }
