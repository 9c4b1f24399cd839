"""Orchestrator HTTP 服务

负责：
1. 接收推理请求，经 RequestRouter 选出（必要时启动）目标模型的 worker
2. 将请求体反向代理到 worker 的 Ollama /api/generate
3. 在后台运行 DemandBasedAutoscaler，周期性按需求与 GPU 状态扩缩容
4. 提供模型列表、健康检查与管理接口
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import uvicorn
from docker.errors import DockerException
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from orchestrator.common.config import (
    METRICS_NVIDIA_SMI,
    METRICS_NVML,
    RUNTIME_DOCKER,
    OrchestratorConfig,
)
from orchestrator.common.errors import ProvisioningError
from orchestrator.common.metrics import (
    MetricsProbe,
    NvidiaSmiMetricsProbe,
    NvmlMetricsProbe,
    StaticMetricsProbe,
)
from orchestrator.serve.autoscaler import DemandBasedAutoscaler, ScalingPolicy
from orchestrator.serve.demand import DemandTracker
from orchestrator.serve.registry import WorkerRegistry
from orchestrator.serve.router import RequestRouter
from orchestrator.worker.runtime import (
    ContainerRuntime,
    DockerContainerRuntime,
    FakeContainerRuntime,
)

logger = logging.getLogger(__name__)


def _filter_request_headers(headers: Dict) -> Dict:
    return {k: v for k, v in headers.items() if k.lower() not in ["host", "content-length"]}


def _filter_response_headers(headers: httpx.Headers) -> Dict:
    filtered = {}
    for k, v in headers.items():
        if k.lower() in ["content-length", "transfer-encoding", "connection"]:
            continue
        filtered[k] = v
    return filtered


def _error_response(status_code: int, message: str, retry_after: Optional[int] = None) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


class OrchestratorService:
    """把注册表、需求统计、路由与自动扩缩容组装成一个 FastAPI 应用。"""

    def __init__(
        self,
        config: OrchestratorConfig,
        runtime: ContainerRuntime,
        probe: MetricsProbe,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.probe = probe
        # 仅测试时注入，用于替换到 worker 的 HTTP 调用
        self.transport = transport

        self.registry = WorkerRegistry(base_port=config.base_port, worker_host=config.worker_host)
        self.demand = DemandTracker()
        self.router = RequestRouter(
            self.registry,
            self.demand,
            runtime,
            runtime_timeout_s=config.runtime_timeout_s,
        )
        self.autoscaler = DemandBasedAutoscaler(
            self.registry,
            self.demand,
            runtime,
            probe,
            policy=ScalingPolicy.from_config(config),
            check_interval=config.scale_interval_s,
            runtime_timeout_s=config.runtime_timeout_s,
        )
        self.started_at = time.time()

        self.app = FastAPI(title="Ollama Pool Orchestrator", lifespan=self._lifespan)
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        self.autoscaler.start()
        logger.info("Orchestrator started, base_port=%s", self.config.base_port)
        try:
            yield
        finally:
            await self.autoscaler.stop()
            await self.runtime.close()
            logger.info("Orchestrator shut down")

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    def _setup_routes(self):
        app = self.app

        @app.get("/health")
        async def health():
            models = await self.router.list_active_models()
            return {
                "status": "healthy",
                "models": len(models),
                "uptime_s": round(time.time() - self.started_at, 1),
            }

        @app.get("/models")
        async def list_models():
            models = await self.router.list_active_models()
            return {"models": models, "count": len(models)}

        @app.post("/v1/generate")
        async def generate(request: Request):
            try:
                body = await request.json()
            except ValueError:
                return _error_response(400, "Invalid request format")
            if not isinstance(body, dict) or not isinstance(body.get("model"), str) or not body["model"]:
                return _error_response(400, "Invalid request format: model is required")
            model = body["model"]

            try:
                worker = await self.router.route(model)
            except ProvisioningError as exc:
                return _error_response(503, str(exc), retry_after=5)

            return await self._forward_generate(worker.base_url, body, dict(request.headers))

        @app.get("/admin/status")
        async def admin_status():
            report = self.autoscaler.last_report
            return {
                "workers": await self.registry.snapshot(),
                "pending_demand": self.demand.peek(),
                "last_scaling": report.to_dict() if report else None,
                "skipped_ticks": self.autoscaler.skipped_ticks,
            }

        @app.post("/admin/scale")
        async def admin_scale():
            report = await self.autoscaler.run_once()
            if report is None:
                return JSONResponse(
                    status_code=409,
                    content={"status": "skipped", "message": "scaling cycle already running"},
                )
            return {"status": "success", "report": report.to_dict()}

        @app.delete("/admin/models/{model:path}")
        async def admin_unregister_model(model: str):
            result = await self.router.unregister_model(model)
            if result["status"] == "error":
                raise HTTPException(status_code=404, detail=result["message"])
            return result

    async def _forward_generate(self, base_url: str, body: Dict, headers: Dict):
        target_url = f"{base_url}/api/generate"
        headers = _filter_request_headers(headers)
        # Ollama 默认流式返回（NDJSON）
        is_stream = body.get("stream", True) is not False

        try:
            if is_stream:
                client = self._client(self.config.request_timeout_s)
                upstream = client.build_request("POST", target_url, json=body, headers=headers)
                try:
                    response = await client.send(upstream, stream=True)
                except BaseException:
                    await client.aclose()
                    raise
                if response.status_code >= 400:
                    detail = await response.aread()
                    await response.aclose()
                    await client.aclose()
                    return Response(
                        content=detail,
                        status_code=response.status_code,
                        headers=_filter_response_headers(response.headers),
                    )

                async def stream_generator():
                    try:
                        async for chunk in response.aiter_bytes():
                            yield chunk
                    except asyncio.CancelledError:
                        logger.info("Client disconnected during stream")
                    except Exception as exc:
                        logger.warning("Upstream stream interrupted: %s", exc)
                    finally:
                        await response.aclose()
                        await client.aclose()

                return StreamingResponse(
                    stream_generator(),
                    status_code=response.status_code,
                    media_type=response.headers.get("content-type", "application/x-ndjson"),
                    headers=_filter_response_headers(response.headers),
                )

            async with self._client(self.config.request_timeout_s) as client:
                response = await client.post(target_url, json=body, headers=headers)
                return Response(
                    content=response.content,
                    status_code=response.status_code,
                    headers=_filter_response_headers(response.headers),
                )
        except httpx.TimeoutException:
            return _error_response(504, "Request timed out")
        except httpx.ConnectError as exc:
            logger.warning("Worker %s unreachable: %s", base_url, exc)
            return _error_response(503, "Model service unavailable", retry_after=5)
        except httpx.HTTPError as exc:
            logger.error("Error forwarding request: %s", exc)
            return _error_response(502, f"Error forwarding request: {exc}")

    def run(self):
        logger.info("Starting Ollama Orchestrator on %s:%s", self.config.host, self.config.port)
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )


def build_runtime(config: OrchestratorConfig) -> ContainerRuntime:
    if config.runtime != RUNTIME_DOCKER:
        logger.warning("Using FakeContainerRuntime (runtime=%s)", config.runtime)
        return FakeContainerRuntime()
    try:
        return DockerContainerRuntime(
            image=config.image,
            container_port=config.container_port,
            pull_on_start=config.pull_on_start,
        )
    except DockerException as exc:
        # 与无 GPU 时退回假引擎一致：无 Docker 守护进程时退回假运行时
        logger.warning("Docker unavailable (%s); falling back to FakeContainerRuntime", exc)
        return FakeContainerRuntime()


def build_probe(config: OrchestratorConfig) -> MetricsProbe:
    if config.metrics == METRICS_NVML:
        return NvmlMetricsProbe()
    if config.metrics == METRICS_NVIDIA_SMI:
        return NvidiaSmiMetricsProbe()
    logger.warning("GPU metrics disabled; every cycle reads zero utilization and VRAM")
    return StaticMetricsProbe()


def main():
    config = OrchestratorConfig.from_env()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    service = OrchestratorService(config, build_runtime(config), build_probe(config))
    try:
        service.run()
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt, shutting down...")
    finally:
        logger.info("Orchestrator stopped")


if __name__ == "__main__":
    main()
