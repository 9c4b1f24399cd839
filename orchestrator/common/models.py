"""数据模型定义"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class WorkerState(str, Enum):
    """Worker 状态"""
    RUNNING = "running"
    # 已选中待停止，路由不再分发
    DRAINING = "draining"


@dataclass
class Worker:
    """一个正在运行的模型推理容器"""
    model: str
    port: int
    started_at: float
    host: str = "localhost"
    state: WorkerState = WorkerState.RUNNING

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def base_url(self) -> str:
        return f"http://{self.endpoint}"

    def to_dict(self) -> Dict:
        return {
            "model": self.model,
            "port": self.port,
            "started_at": self.started_at,
            "endpoint": self.endpoint,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class ScalingMetrics:
    """GPU 指标快照；全零表示指标不可用"""
    gpu_utilization_pct: float = 0.0
    vram_used_mb: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "gpu_utilization_pct": self.gpu_utilization_pct,
            "vram_used_mb": self.vram_used_mb,
        }


@dataclass
class ScalingDecision:
    """单个模型在一次扩缩容周期中的决策与结果"""
    model: str
    requests: int
    workers: int
    desired: int
    started: List[int] = field(default_factory=list)
    stopped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "model": self.model,
            "requests": self.requests,
            "workers": self.workers,
            "desired": self.desired,
            "started": list(self.started),
            "stopped": list(self.stopped),
            "failed": list(self.failed),
        }


@dataclass
class ScalingReport:
    """一次扩缩容周期的汇总"""
    started_at: float
    metrics: ScalingMetrics
    decisions: Dict[str, ScalingDecision] = field(default_factory=dict)
    finished_at: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "metrics": self.metrics.to_dict(),
            "decisions": {k: v.to_dict() for k, v in self.decisions.items()},
        }
