"""容器运行时 - 启动 / 停止绑定到指定端口的 Ollama worker

两个调用都是 best-effort 且不幂等：失败时抛 RuntimeOperationError，
即使报告失败也可能已产生副作用（例如容器已创建但端口映射失败）。
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Set, Tuple

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.types import DeviceRequest

from orchestrator.common.errors import RuntimeOperationError

logger = logging.getLogger(__name__)

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")


async def call_runtime(coro, timeout_s: Optional[float]):
    """Bound a runtime call; callers treat a timeout like any other runtime failure."""
    if timeout_s is None:
        return await coro
    return await asyncio.wait_for(coro, timeout_s)


def container_name(model: str, port: int) -> str:
    # docker 容器名不允许 ':' '/'，如 llama3:8b -> llama3_8b
    return f"ollama-{_NAME_UNSAFE.sub('_', model)}-{port}"


class ContainerRuntime:
    """Capability used by the router and the autoscaler to manage workers."""

    async def start(self, model: str, port: int) -> None:
        raise NotImplementedError

    async def stop(self, model: str, port: int) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class DockerContainerRuntime(ContainerRuntime):
    """Runs one `ollama/ollama` container per worker through the Docker SDK.

    After a successful start the model pull is triggered as a detached task;
    there is no ordering guarantee between the pull and the first request
    served by the worker, so a worker may answer before warm-up completes.
    """

    def __init__(
        self,
        image: str = "ollama/ollama",
        container_port: int = 11434,
        gpus: Optional[str] = "all",
        pull_on_start: bool = True,
        client: Optional[Any] = None,
    ) -> None:
        self.image = image
        self.container_port = container_port
        self.gpus = gpus
        self.pull_on_start = pull_on_start
        self.client = client or docker.from_env()
        self._pull_tasks: Set[asyncio.Task] = set()

    def _device_requests(self) -> List[DeviceRequest]:
        if not self.gpus:
            return []
        if self.gpus == "all":
            return [DeviceRequest(count=-1, capabilities=[["gpu"]])]
        return [DeviceRequest(device_ids=self.gpus.split(","), capabilities=[["gpu"]])]

    def _run_container(self, model: str, port: int) -> None:
        self.client.containers.run(
            image=self.image,
            name=container_name(model, port),
            detach=True,
            auto_remove=True,
            ports={f"{self.container_port}/tcp": port},
            device_requests=self._device_requests(),
            labels={"orchestrator.model": model, "orchestrator.port": str(port)},
        )

    def _stop_container(self, model: str, port: int) -> None:
        c = self.client.containers.get(container_name(model, port))
        c.stop(timeout=20)

    def _pull_model(self, model: str, port: int) -> Tuple[int, bytes]:
        c = self.client.containers.get(container_name(model, port))
        result = c.exec_run(["ollama", "pull", model])
        return result.exit_code, result.output

    async def start(self, model: str, port: int) -> None:
        try:
            await asyncio.to_thread(self._run_container, model, port)
        except (APIError, DockerException, requests.exceptions.RequestException) as exc:
            raise RuntimeOperationError("start", model, port, str(exc)) from exc
        logger.info("Started container %s", container_name(model, port))
        if self.pull_on_start:
            task = asyncio.create_task(self._pull_in_background(model, port))
            self._pull_tasks.add(task)
            task.add_done_callback(self._pull_tasks.discard)

    async def _pull_in_background(self, model: str, port: int) -> None:
        try:
            exit_code, output = await asyncio.to_thread(self._pull_model, model, port)
        except Exception as exc:
            logger.warning("Model pull for %s on %s failed: %s", model, port, exc)
            return
        if exit_code != 0:
            tail = (output or b"").decode("utf-8", errors="ignore")[-500:]
            logger.warning("Model pull for %s on %s exited %s: %s", model, port, exit_code, tail)
            return
        logger.info("Model %s pulled into worker on port %s", model, port)

    async def stop(self, model: str, port: int) -> None:
        try:
            await asyncio.to_thread(self._stop_container, model, port)
        except NotFound as exc:
            raise RuntimeOperationError("stop", model, port, "container not found") from exc
        except (APIError, DockerException, requests.exceptions.RequestException) as exc:
            raise RuntimeOperationError("stop", model, port, str(exc)) from exc
        logger.info("Stopped container %s", container_name(model, port))

    async def close(self) -> None:
        for task in list(self._pull_tasks):
            task.cancel()
        if self._pull_tasks:
            await asyncio.gather(*self._pull_tasks, return_exceptions=True)
        await asyncio.to_thread(self.client.close)


class FakeContainerRuntime(ContainerRuntime):
    """In-memory runtime for hosts without Docker and for tests.

    `fail_start` / `fail_stop` hold model names whose calls should fail.
    """

    def __init__(self, delay_s: float = 0.0) -> None:
        self.delay_s = delay_s
        self.running: Dict[Tuple[str, int], bool] = {}
        self.calls: List[Tuple[str, str, int]] = []
        self.fail_start: Set[str] = set()
        self.fail_stop: Set[str] = set()

    def started(self, model: Optional[str] = None) -> List[int]:
        return [p for action, m, p in self.calls if action == "start" and (model is None or m == model)]

    def stopped(self, model: Optional[str] = None) -> List[int]:
        return [p for action, m, p in self.calls if action == "stop" and (model is None or m == model)]

    async def start(self, model: str, port: int) -> None:
        self.calls.append(("start", model, port))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if model in self.fail_start:
            raise RuntimeOperationError("start", model, port, "fake failure")
        if (model, port) in self.running:
            raise RuntimeOperationError("start", model, port, "port already bound")
        self.running[(model, port)] = True

    async def stop(self, model: str, port: int) -> None:
        self.calls.append(("stop", model, port))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if model in self.fail_stop:
            raise RuntimeOperationError("stop", model, port, "fake failure")
        if self.running.pop((model, port), None) is None:
            raise RuntimeOperationError("stop", model, port, "not running")
