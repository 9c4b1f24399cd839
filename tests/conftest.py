"""Shared fixtures: in-memory runtime, fixed GPU readings, fresh registry."""
import pytest

from orchestrator.common.config import OrchestratorConfig
from orchestrator.common.metrics import StaticMetricsProbe
from orchestrator.serve.autoscaler import DemandBasedAutoscaler
from orchestrator.serve.demand import DemandTracker
from orchestrator.serve.registry import WorkerRegistry
from orchestrator.serve.router import RequestRouter
from orchestrator.worker.runtime import FakeContainerRuntime

BASE_PORT = 11434


@pytest.fixture
def runtime():
    return FakeContainerRuntime()


@pytest.fixture
def probe():
    return StaticMetricsProbe()


@pytest.fixture
def registry():
    return WorkerRegistry(base_port=BASE_PORT)


@pytest.fixture
def demand():
    return DemandTracker()


@pytest.fixture
def router(registry, demand, runtime):
    return RequestRouter(registry, demand, runtime)


@pytest.fixture
def autoscaler(registry, demand, runtime, probe):
    return DemandBasedAutoscaler(registry, demand, runtime, probe, check_interval=30.0)


@pytest.fixture
def config():
    return OrchestratorConfig(runtime="fake", metrics="none", base_port=BASE_PORT)
