"""配置加载

默认值 -> YAML 配置文件（可选）-> ORCH_* 环境变量，后者覆盖前者。
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from orchestrator.common.errors import ConfigError

logger = logging.getLogger(__name__)

RUNTIME_DOCKER = "docker"
RUNTIME_FAKE = "fake"
METRICS_NVML = "nvml"
METRICS_NVIDIA_SMI = "nvidia-smi"
METRICS_NONE = "none"


@dataclass
class OrchestratorConfig:
    # HTTP 服务
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    request_timeout_s: float = 300.0

    # 扩缩容策略
    scale_interval_s: float = 30.0
    base_port: int = 11434
    per_model_vram_mb: float = 4000.0
    vram_headroom: float = 0.9
    gpu_util_threshold_pct: float = 70.0
    request_threshold: int = 10
    request_divisor: int = 5

    # 容器运行时
    runtime: str = RUNTIME_DOCKER
    runtime_timeout_s: Optional[float] = 600.0
    worker_host: str = "localhost"
    image: str = "ollama/ollama"
    container_port: int = 11434
    pull_on_start: bool = True

    # GPU 指标
    metrics: str = METRICS_NVML

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorConfig":
        cfg = cls()
        cfg.update(data)
        return cfg

    def update(self, data: Dict[str, Any]) -> None:
        known = {f.name: f for f in fields(self)}
        for key, raw in data.items():
            f = known.get(key)
            if f is None:
                logger.warning("Ignoring unknown config key %s", key)
                continue
            setattr(self, key, _coerce(key, raw, getattr(self, key)))
        self.validate()

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "OrchestratorConfig":
        env = os.environ if environ is None else environ
        cfg = cls()
        path = env.get("ORCH_CONFIG")
        if path:
            cfg.update(load_yaml(path))
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            value = env.get(f"ORCH_{f.name.upper()}")
            if value is not None and value != "":
                overrides[f.name] = value
        if overrides:
            cfg.update(overrides)
        return cfg

    def validate(self) -> None:
        if self.scale_interval_s <= 0:
            raise ConfigError("scale_interval_s must be positive")
        if self.per_model_vram_mb <= 0:
            raise ConfigError("per_model_vram_mb must be positive")
        if self.request_divisor <= 0:
            raise ConfigError("request_divisor must be positive")
        if not 0 < self.base_port < 65536:
            raise ConfigError(f"base_port out of range: {self.base_port}")
        if self.runtime not in {RUNTIME_DOCKER, RUNTIME_FAKE}:
            raise ConfigError(f"unsupported runtime: {self.runtime}")
        if self.metrics not in {METRICS_NVML, METRICS_NVIDIA_SMI, METRICS_NONE}:
            raise ConfigError(f"unsupported metrics probe: {self.metrics}")


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file {path} not found") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    # 允许把配置整体放在 orchestrator: 下
    section = data.get("orchestrator", data)
    if not isinstance(section, dict):
        raise ConfigError(f"Config file {path}: 'orchestrator' must be a mapping")
    return section


def _coerce(key: str, raw: Any, current: Any) -> Any:
    if raw is None:
        if key == "runtime_timeout_s":
            return None
        raise ConfigError(f"{key} must not be null")
    try:
        if isinstance(current, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in {"1", "true", "yes", "on"}
            return bool(raw)
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float) or key == "runtime_timeout_s":
            value = float(raw)
            if key == "runtime_timeout_s" and value <= 0:
                return None
            return value
        return str(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {raw!r}") from exc
