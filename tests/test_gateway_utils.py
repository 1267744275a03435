import dataclasses
import json

import pytest

from fal_gateway.openai.gateway import (
    ModelBinding,
    ModelRegistry,
    UnsupportedModelError,
    build_openai_error,
    extract_bearer_token,
    mask_secret,
)


def test_extract_bearer_token():
    assert extract_bearer_token("Bearer abc123") == "abc123"
    assert extract_bearer_token("bearer xyz") == "xyz"
    assert extract_bearer_token("Token abc") is None
    assert extract_bearer_token("Bearer ") is None
    assert extract_bearer_token("") is None


def test_build_openai_error():
    payload = build_openai_error(401, "authentication_error", "Invalid access token.", {"x": 1})
    assert payload["error"]["code"] == 401
    assert payload["error"]["type"] == "authentication_error"
    assert payload["error"]["message"] == "Invalid access token."
    assert payload["error"]["metadata"]["x"] == 1


def test_mask_secret():
    assert mask_secret("abcdef123") == "abcd*****"
    assert mask_secret("abc") == "***"
    assert mask_secret("") == ""


def test_registry_resolves_default_when_model_absent(registry):
    assert registry.resolve(None).client_id == "imagen4-preview"
    assert registry.resolve("").client_id == "imagen4-preview"


def test_registry_resolves_known_model(registry):
    binding = registry.resolve("flux-1.1-pro-ultra")
    assert binding.submit_url == "https://queue.fal.run/fal-ai/flux-pro/v1.1-ultra"
    assert binding.status_url("r1") == "https://queue.fal.run/fal-ai/flux-pro/requests/r1/status"
    assert binding.result_url("r1") == "https://queue.fal.run/fal-ai/flux-pro/requests/r1"


def test_registry_unknown_model_lists_supported_ids(registry):
    with pytest.raises(UnsupportedModelError) as excinfo:
        registry.resolve("dall-e-3")
    error = excinfo.value
    assert error.supported == ["imagen4-preview", "flux-1.1-pro-ultra"]
    assert "dall-e-3" in str(error)
    assert "imagen4-preview, flux-1.1-pro-ultra" in str(error)
    assert error.payload()["error"]["type"] == "invalid_request_error"


def test_registry_is_immutable(registry):
    binding = registry.resolve(None)
    with pytest.raises(dataclasses.FrozenInstanceError):
        binding.client_id = "other"
    with pytest.raises(TypeError):
        registry._bindings["other"] = binding
    assert "other" not in registry


def test_registry_rejects_unknown_default():
    binding = ModelBinding("m1", "https://q/submit", "https://q", "M1")
    with pytest.raises(RuntimeError):
        ModelRegistry([binding], default_id="missing")


def test_registry_from_custom_file(tmp_path):
    path = tmp_path / "models.json"
    path.write_text(
        json.dumps(
            {
                "sdxl": {
                    "submit_url": "https://queue.fal.run/fal-ai/fast-sdxl/",
                    "status_base_url": "https://queue.fal.run/fal-ai/fast-sdxl/",
                }
            }
        )
    )
    registry = ModelRegistry.from_file(path, default_id="sdxl")
    binding = registry.resolve(None)
    assert binding.display_name == "sdxl"
    assert binding.status_url("r") == "https://queue.fal.run/fal-ai/fast-sdxl/requests/r/status"
    assert registry.ids() == ["sdxl"]


def test_extract_bearer_token_trims_padding():
    assert extract_bearer_token("Bearer  key ") == "key"
    assert extract_bearer_token("BEARER key") == "key"
    assert extract_bearer_token("Bearerkey") is None
