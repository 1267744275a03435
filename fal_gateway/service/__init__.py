"""Service layer exports.

`app` / `start_server` are the OpenAI-compatible API service entry points.
"""

from __future__ import annotations

from fal_gateway.openai.api import app, start_server

__all__ = ["app", "start_server"]
