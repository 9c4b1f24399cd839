"""异常定义"""
from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ConfigError(OrchestratorError):
    pass


class RuntimeOperationError(OrchestratorError):
    """A container start/stop call failed; retried on the next cycle or request."""

    def __init__(self, action: str, model: str, port: int, reason: str = "") -> None:
        self.action = action
        self.model = model
        self.port = port
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"{action} {model} on port {port} failed{detail}")


class ProvisioningError(OrchestratorError):
    """No worker could be provided for a request."""

    def __init__(self, model: str, cause: Optional[BaseException] = None) -> None:
        self.model = model
        self.cause = cause
        message = f"Failed to start model {model}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
