"""GPU 指标采集

所有 probe 的 read() 都不会抛异常：采集失败时返回全零的 ScalingMetrics，
扩缩容逻辑据此偏向缩容 / 不扩容。
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional

import pynvml

from orchestrator.common.models import ScalingMetrics

logger = logging.getLogger(__name__)

NVIDIA_SMI_QUERY = [
    "nvidia-smi",
    "--query-gpu=utilization.gpu,memory.used",
    "--format=csv,noheader,nounits",
]


def _parse_visible_devices() -> Optional[List[int]]:
    env = os.getenv("CUDA_VISIBLE_DEVICES")
    if env is None:
        return None
    env = env.strip()
    if env == "":
        return None
    if env in {"-1", "none", "None"}:
        return []
    indices: List[int] = []
    for part in env.split(","):
        part = part.strip()
        if part.isdigit():
            indices.append(int(part))
    return indices


class MetricsProbe:
    """Source of the per-cycle GPU reading."""

    async def read(self) -> ScalingMetrics:
        raise NotImplementedError


class StaticMetricsProbe(MetricsProbe):
    """Returns a fixed reading; used in fake mode and in tests."""

    def __init__(self, gpu_utilization_pct: float = 0.0, vram_used_mb: float = 0.0) -> None:
        self.metrics = ScalingMetrics(gpu_utilization_pct, vram_used_mb)

    def set(self, gpu_utilization_pct: float, vram_used_mb: float) -> None:
        self.metrics = ScalingMetrics(gpu_utilization_pct, vram_used_mb)

    async def read(self) -> ScalingMetrics:
        return self.metrics


class NvmlMetricsProbe(MetricsProbe):
    """Reads utilization and used memory via NVML (only CUDA_VISIBLE_DEVICES cards).

    Utilization is averaged across the visible GPUs, used VRAM is summed.
    """

    async def read(self) -> ScalingMetrics:
        try:
            return await asyncio.to_thread(self._read_sync)
        except Exception as exc:
            logger.warning("Failed to get GPU metrics via NVML: %s", exc)
            return ScalingMetrics()

    def _read_sync(self) -> ScalingMetrics:
        pynvml.nvmlInit()
        try:
            gpu_count = pynvml.nvmlDeviceGetCount()
            visible = _parse_visible_devices()
            if visible is None:
                indices = list(range(gpu_count))
            else:
                indices = [i for i in visible if 0 <= i < gpu_count]
            if not indices:
                return ScalingMetrics()

            utilization_sum = 0.0
            used_mb = 0.0
            for i in indices:
                handle = pynvml.nvmlDeviceGetHandleByIndex(i)
                mem_info = pynvml.nvmlDeviceGetMemoryInfo(handle)
                used_mb += mem_info.used / (1024 ** 2)
                utilization_sum += pynvml.nvmlDeviceGetUtilizationRates(handle).gpu
            return ScalingMetrics(
                gpu_utilization_pct=round(utilization_sum / len(indices), 2),
                vram_used_mb=round(used_mb, 2),
            )
        finally:
            pynvml.nvmlShutdown()


class NvidiaSmiMetricsProbe(MetricsProbe):
    """Shells out to nvidia-smi; for hosts where NVML is not loadable in-process."""

    def __init__(self, timeout_s: float = 10.0) -> None:
        self.timeout_s = timeout_s

    async def read(self) -> ScalingMetrics:
        try:
            proc = await asyncio.create_subprocess_exec(
                *NVIDIA_SMI_QUERY,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout_s)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise
            if proc.returncode != 0:
                raise RuntimeError(
                    f"nvidia-smi exited {proc.returncode}: "
                    f"{stderr.decode('utf-8', errors='ignore').strip()}"
                )
            return parse_nvidia_smi(stdout.decode("utf-8", errors="ignore"))
        except Exception as exc:
            logger.warning("Failed to get GPU metrics via nvidia-smi: %r", exc)
            return ScalingMetrics()


def parse_nvidia_smi(output: str) -> ScalingMetrics:
    """Parse `utilization.gpu,memory.used` CSV rows, one per GPU.

    Multiple GPUs are combined the same way as NvmlMetricsProbe.
    """
    utils: List[float] = []
    used = 0.0
    for line in output.strip().splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 2:
            raise ValueError(f"unexpected nvidia-smi row: {line!r}")
        utils.append(float(parts[0]))
        used += float(parts[1])
    if not utils:
        return ScalingMetrics()
    return ScalingMetrics(
        gpu_utilization_pct=round(sum(utils) / len(utils), 2),
        vram_used_mb=used,
    )
