import asyncio
from types import SimpleNamespace

import pytest

from orchestrator.common import metrics
from orchestrator.common.metrics import (
    NvidiaSmiMetricsProbe,
    NvmlMetricsProbe,
    parse_nvidia_smi,
)
from orchestrator.common.models import ScalingMetrics


def test_parse_single_gpu():
    assert parse_nvidia_smi("80, 20000\n") == ScalingMetrics(80.0, 20000.0)


def test_parse_multiple_gpus_averages_util_and_sums_vram():
    result = parse_nvidia_smi("80, 10000\n40, 6000\n")
    assert result == ScalingMetrics(60.0, 16000.0)


def test_parse_garbage_raises():
    with pytest.raises(ValueError):
        parse_nvidia_smi("N/A\n")


class _FakeProc:
    def __init__(self, stdout: bytes, returncode: int = 0):
        self._stdout = stdout
        self.returncode = returncode

    async def communicate(self):
        return self._stdout, b""


@pytest.mark.asyncio
async def test_nvidia_smi_probe_reads(monkeypatch):
    async def fake_exec(*args, **kwargs):
        assert args[0] == "nvidia-smi"
        return _FakeProc(b"75, 12000\n")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    assert await NvidiaSmiMetricsProbe().read() == ScalingMetrics(75.0, 12000.0)


@pytest.mark.asyncio
async def test_nvidia_smi_missing_binary_reads_zero(monkeypatch):
    async def fake_exec(*args, **kwargs):
        raise FileNotFoundError("nvidia-smi")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    assert await NvidiaSmiMetricsProbe().read() == ScalingMetrics()


@pytest.mark.asyncio
async def test_nvidia_smi_nonzero_exit_reads_zero(monkeypatch):
    async def fake_exec(*args, **kwargs):
        return _FakeProc(b"", returncode=9)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    assert await NvidiaSmiMetricsProbe().read() == ScalingMetrics()


class _FakeNvml:
    def __init__(self, devices):
        self.devices = devices
        self.shutdowns = 0

    def nvmlInit(self):
        pass

    def nvmlShutdown(self):
        self.shutdowns += 1

    def nvmlDeviceGetCount(self):
        return len(self.devices)

    def nvmlDeviceGetHandleByIndex(self, i):
        return i

    def nvmlDeviceGetMemoryInfo(self, handle):
        return SimpleNamespace(used=self.devices[handle][1] * 1024 ** 2)

    def nvmlDeviceGetUtilizationRates(self, handle):
        return SimpleNamespace(gpu=self.devices[handle][0])


@pytest.mark.asyncio
async def test_nvml_probe_respects_visible_devices(monkeypatch):
    fake = _FakeNvml([(90, 8000), (10, 2000), (50, 4000)])
    monkeypatch.setattr(metrics, "pynvml", fake)
    monkeypatch.setenv("CUDA_VISIBLE_DEVICES", "0,2")

    result = await NvmlMetricsProbe().read()

    assert result == ScalingMetrics(70.0, 12000.0)
    assert fake.shutdowns == 1


@pytest.mark.asyncio
async def test_nvml_failure_reads_zero(monkeypatch):
    class Broken(_FakeNvml):
        def nvmlInit(self):
            raise RuntimeError("NVML Shared Library Not Found")

    monkeypatch.setattr(metrics, "pynvml", Broken([]))
    assert await NvmlMetricsProbe().read() == ScalingMetrics()
