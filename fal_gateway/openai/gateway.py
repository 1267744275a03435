from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, Optional

import orjson
from loguru import logger

if TYPE_CHECKING:
    from .queue import JobOutcome


DIR = Path(__file__).resolve().parent
DEFAULT_MODELS_FILE = DIR / "models.json"
DEFAULT_MODEL_ID = "imagen4-preview"


def mask_secret(raw: str, keep: int = 4) -> str:
    if not raw:
        return ""
    if len(raw) <= keep:
        return "*" * len(raw)
    return f"{raw[:keep]}{'*' * (len(raw) - keep)}"


def build_openai_error(
    code: int,
    error_type: str,
    message: str,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "type": error_type,
            "message": message,
            "metadata": metadata or {},
        }
    }


def extract_bearer_token(authorization_header: str) -> Optional[str]:
    if not authorization_header:
        return None
    parts = authorization_header.split(" ", 1)
    if len(parts) != 2:
        return None
    if parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


class GatewayError(RuntimeError):
    status_code = 500
    error_type = "api_error"

    def payload(self) -> dict[str, Any]:
        return build_openai_error(self.status_code, self.error_type, str(self))


class UnsupportedModelError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"

    def __init__(self, model_id: str, supported: list[str]):
        self.model_id = model_id
        self.supported = supported
        super().__init__(f"Unsupported model: {model_id}. Supported models are: {', '.join(supported)}")


class ProviderError(GatewayError):
    """The remote queue did not produce images."""

    def __init__(self, message: str, outcome: Optional["JobOutcome"] = None):
        super().__init__(message)
        self.outcome = outcome


@dataclass(frozen=True)
class ModelBinding:
    client_id: str
    submit_url: str
    status_base_url: str
    display_name: str

    def status_url(self, request_id: str) -> str:
        return f"{self.status_base_url}/requests/{request_id}/status"

    def result_url(self, request_id: str) -> str:
        return f"{self.status_base_url}/requests/{request_id}"


class ModelRegistry:
    """Client-facing model id -> queue endpoints. Built once, never mutated."""

    def __init__(self, bindings: list[ModelBinding], default_id: str = DEFAULT_MODEL_ID):
        table = {binding.client_id: binding for binding in bindings}
        if default_id not in table:
            raise RuntimeError(
                f"Default model {default_id!r} is not in the model table ({', '.join(table) or 'empty'})"
            )
        self._bindings: Mapping[str, ModelBinding] = MappingProxyType(table)
        self.default_id = default_id

    @classmethod
    def from_mapping(cls, raw: dict[str, Any], default_id: str = DEFAULT_MODEL_ID) -> "ModelRegistry":
        bindings = []
        for client_id, meta in raw.items():
            bindings.append(
                ModelBinding(
                    client_id=client_id,
                    submit_url=meta["submit_url"].rstrip("/"),
                    status_base_url=meta["status_base_url"].rstrip("/"),
                    display_name=meta.get("display_name") or client_id,
                )
            )
        return cls(bindings, default_id)

    @classmethod
    def from_file(cls, path: Optional[Path] = None, default_id: str = DEFAULT_MODEL_ID) -> "ModelRegistry":
        path = path or DEFAULT_MODELS_FILE
        with Path(path).open("rb") as f:
            return cls.from_mapping(orjson.loads(f.read()), default_id)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)

    def ids(self) -> list[str]:
        return list(self._bindings)

    def get(self, client_id: str) -> Optional[ModelBinding]:
        return self._bindings.get(client_id)

    def bindings(self) -> list[ModelBinding]:
        return list(self._bindings.values())

    def resolve(self, requested_id: Optional[str] = None) -> ModelBinding:
        client_id = requested_id
        if not client_id:
            client_id = self.default_id
            logger.info("No model specified in request, defaulting to {}", client_id)
        binding = self._bindings.get(client_id) if isinstance(client_id, str) else None
        if binding is None:
            raise UnsupportedModelError(str(client_id), self.ids())
        return binding
