"""Top-level exports without import-time side effects."""

from __future__ import annotations

from typing import Any

__all__ = [
    "FalQueueClient",
    "GenerationRequest",
    "ModelRegistry",
    "app",
    "start_server",
]


def __getattr__(name: str) -> Any:
    if name in {"FalQueueClient", "GenerationRequest"}:
        from .openai import queue as _queue

        return getattr(_queue, name)

    if name == "ModelRegistry":
        from .openai import gateway as _gateway

        return _gateway.ModelRegistry

    if name in {"app", "start_server"}:
        from . import service as _service

        return getattr(_service, name)

    raise AttributeError(f"module 'fal_gateway' has no attribute {name!r}")
