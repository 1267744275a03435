from __future__ import annotations

import asyncio
import os
import secrets
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Type, TypeVar, Union

import httpx
import orjson
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from fal_gateway.openai import helpers
from fal_gateway.openai.gateway import (
    DEFAULT_MODEL_ID,
    GatewayError,
    ModelBinding,
    ModelRegistry,
    ProviderError,
    build_openai_error,
    extract_bearer_token,
    mask_secret,
)
from fal_gateway.openai.queue import (
    FalQueueClient,
    GenerationRequest,
    JobCompleted,
    QueueSettings,
)
from fal_gateway.openai.sizing import extract_size_directive, last_user_prompt, normalize_aspect_ratio
from fal_gateway.openai.streaming import DONE_EVENT, BackgroundJobs, EventStream
from fal_gateway.openai.type import (
    ChatCompletionChunk,
    ChatCompletionChunkChoice,
    ChatCompletionResponse,
    ChatCompletionResponseChoice,
    ChatData,
    ImageData,
    ImagesGenData,
    ImagesResponse,
    MessageResponse,
    ModelCard,
)

DIR = Path(__file__).resolve().parent
DEFAULT_SIZE = "1024x1024"
PLACEHOLDER_PROMPT = "image"
RESPONSE_FORMATS = ("url", "b64_json")
SHUTDOWN_DRAIN_SECONDS = 120.0
STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}
MISSING_PROMPT_MESSAGE = (
    "Please provide a description for the image. You can also specify a ratio, "
    "e.g., 'a cat 比例:16:9' or 'a dog 9:16'."
)

ModelT = TypeVar("ModelT", bound=BaseModel)

app = FastAPI(title="Fal Queue Gateway", description="OpenAI-Compatible image gateway for fal.ai queue models")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _load_dotenv_file(path: Path) -> bool:
    if not path.exists():
        return False
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]
        os.environ.setdefault(key, value)
    return True


def _bootstrap_env() -> None:
    # Priority:
    # 1) Existing process environment
    # 2) Explicit config file via GATEWAY_CONFIG_FILE
    # 3) .env.gateway / .env in cwd and package dir
    explicit_path = os.getenv("GATEWAY_CONFIG_FILE", "").strip()
    loaded_from: list[Path] = []
    if explicit_path:
        p = Path(explicit_path)
        if _load_dotenv_file(p):
            loaded_from.append(p)

    for candidate in (
        Path.cwd() / ".env.gateway",
        Path.cwd() / ".env",
        DIR / ".env.gateway",
        DIR / ".env",
    ):
        if _load_dotenv_file(candidate):
            loaded_from.append(candidate)

    if loaded_from:
        logger.info("Loaded gateway config from: {}", ", ".join(str(p) for p in loaded_from))


_bootstrap_env()


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer")
    if value < minimum:
        raise RuntimeError(f"Environment variable {name} must be >= {minimum}")
    return value


@dataclass
class GatewayConfig:
    worker_access_key: str
    fal_api_key: str
    default_model: str = DEFAULT_MODEL_ID
    models_file: Optional[Path] = None
    owned_by: str = "fal-ai"
    poll_max_attempts: int = 45
    poll_interval_ms: int = 2000
    poll_escalation_window: int = 4
    http_timeout_seconds: int = 60

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        models_file = os.getenv("FAL_MODELS_FILE", "").strip()
        return cls(
            # Missing secrets are reported per request, not at startup.
            worker_access_key=os.getenv("WORKER_ACCESS_KEY", "").strip(),
            fal_api_key=os.getenv("FAL_API_KEY", "").strip(),
            default_model=os.getenv("DEFAULT_MODEL", "").strip() or DEFAULT_MODEL_ID,
            models_file=Path(models_file) if models_file else None,
            owned_by=os.getenv("FAL_OWNED_BY", "").strip() or "fal-ai",
            poll_max_attempts=_env_int("FAL_POLL_MAX_ATTEMPTS", 45, minimum=1),
            poll_interval_ms=_env_int("FAL_POLL_INTERVAL_MS", 2000),
            poll_escalation_window=_env_int("FAL_POLL_ESCALATION_WINDOW", 4),
            http_timeout_seconds=_env_int("FAL_HTTP_TIMEOUT_SECONDS", 60, minimum=1),
        )

    def queue_settings(self) -> QueueSettings:
        return QueueSettings(
            max_attempts=self.poll_max_attempts,
            poll_interval_seconds=self.poll_interval_ms / 1000,
            escalation_window=self.poll_escalation_window,
        )


@dataclass
class GatewayRuntime:
    config: GatewayConfig
    registry: ModelRegistry
    http: httpx.AsyncClient
    queue: FalQueueClient
    jobs: BackgroundJobs

    @classmethod
    def build(cls, config: GatewayConfig, http: Optional[httpx.AsyncClient] = None) -> "GatewayRuntime":
        registry = ModelRegistry.from_file(config.models_file, config.default_model)
        http = http or httpx.AsyncClient(timeout=config.http_timeout_seconds, follow_redirects=True)
        return cls(
            config=config,
            registry=registry,
            http=http,
            queue=FalQueueClient(http, config.fal_api_key, config.queue_settings()),
            jobs=BackgroundJobs(),
        )

    async def close(self) -> None:
        await self.jobs.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        await self.http.aclose()


def _runtime() -> GatewayRuntime:
    runtime = getattr(app.state, "runtime", None)
    if not runtime:
        raise RuntimeError("Gateway runtime is not initialized")
    return runtime


def _openai_http_error(code: int, err_type: str, message: str, metadata: Optional[dict[str, Any]] = None):
    raise HTTPException(status_code=code, detail=build_openai_error(code, err_type, message, metadata))


@app.on_event("startup")
async def startup_event() -> None:
    config = GatewayConfig.from_env()
    runtime = GatewayRuntime.build(config)
    app.state.runtime = runtime

    if not config.worker_access_key:
        logger.warning("WORKER_ACCESS_KEY is not set; every request will be rejected with configuration_error")
    if not config.fal_api_key:
        logger.warning("FAL_API_KEY is not set; every request will be rejected with configuration_error")
    logger.info(
        "Gateway startup complete: models={} default={} poll={}x{}ms fal_key={}",
        ", ".join(runtime.registry.ids()),
        runtime.registry.default_id,
        config.poll_max_attempts,
        config.poll_interval_ms,
        mask_secret(config.fal_api_key),
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    runtime = getattr(app.state, "runtime", None)
    if not runtime:
        return
    await runtime.close()


@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    started = asyncio.get_running_loop().time()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        elapsed_ms = (asyncio.get_running_loop().time() - started) * 1000
        logger.info(
            "request_id={} method={} path={} status={} duration_ms={:.2f} model={}",
            request_id,
            request.method,
            request.url.path,
            status_code,
            elapsed_ms,
            getattr(request.state, "model", None),
        )
    response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        payload = exc.detail
    else:
        payload = build_openai_error(exc.status_code, "invalid_request_error", str(exc.detail))
    return JSONResponse(payload, status_code=exc.status_code)


@app.exception_handler(GatewayError)
async def gateway_exception_handler(_: Request, exc: GatewayError):
    return JSONResponse(exc.payload(), status_code=exc.status_code)


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error in path {}: {}", request.url.path, exc)
    payload = build_openai_error(500, "api_error", "Internal server error")
    return JSONResponse(payload, status_code=500)


async def require_service_auth(request: Request) -> None:
    config = _runtime().config
    if not config.worker_access_key:
        logger.error("WORKER_ACCESS_KEY is not configured in environment variables.")
        _openai_http_error(500, "configuration_error", "Worker access key not configured.")

    token = extract_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        _openai_http_error(
            401,
            "authentication_error",
            "Missing or invalid Authorization header. Expected 'Bearer YOUR_ACCESS_KEY'.",
        )
    if not secrets.compare_digest(token.encode("utf-8"), config.worker_access_key.encode("utf-8")):
        _openai_http_error(401, "authentication_error", "Invalid access token.")

    if not config.fal_api_key:
        _openai_http_error(500, "configuration_error", "FAL_API_KEY is not configured.")


async def _parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    try:
        payload = orjson.loads(await request.body())
    except orjson.JSONDecodeError:
        _openai_http_error(400, "invalid_request_error", "Invalid JSON body")
    if not isinstance(payload, dict):
        _openai_http_error(400, "invalid_request_error", "Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        _openai_http_error(400, "invalid_request_error", f"Invalid parameter '{location}': {first.get('msg')}")


def _model_card(binding: ModelBinding, owned_by: str, created: int) -> dict[str, Any]:
    return ModelCard(
        id=binding.client_id,
        created=created,
        owned_by=owned_by,
        root=binding.client_id,
    ).model_dump()


@app.get("/models/{model}", response_model=None)
@app.get("/models", response_model=None)
@app.get("/v1/models/{model}", response_model=None)
@app.get("/v1/models", response_model=None)
async def list_models(
    request: Request,
    model: Optional[str] = None,
    _auth: None = Depends(require_service_auth),
) -> JSONResponse:
    runtime = _runtime()
    request.state.model = model or "models"
    created = helpers.generate_timestamp()
    if model:
        binding = runtime.registry.get(model)
        if not binding:
            _openai_http_error(404, "not_found_error", "Model not found")
        return JSONResponse(_model_card(binding, runtime.config.owned_by, created))

    models_data = [
        _model_card(binding, runtime.config.owned_by, created) for binding in runtime.registry.bindings()
    ]
    return JSONResponse({"object": "list", "data": models_data})


def create_completion_data(
    *,
    completion_id: str,
    created: int,
    model: str,
    role: Optional[str] = None,
    chunk: Optional[str] = None,
    finish_reason: Optional[str] = None,
) -> dict[str, Any]:
    completion_data = ChatCompletionChunk(
        id=completion_id,
        created=created,
        model=model,
        choices=[
            ChatCompletionChunkChoice(
                index=0,
                delta=MessageResponse(role=role, content=chunk),
                finish_reason=finish_reason,
            )
        ],
    )
    payload = completion_data.model_dump()
    # Deltas only carry the fields that changed; the terminal chunk has an empty delta.
    payload["choices"][0]["delta"] = completion_data.choices[0].delta.model_dump(exclude_none=True)
    return payload


def create_completion_response(*, completion_id: str, model: str, content: str) -> dict[str, Any]:
    return ChatCompletionResponse(
        id=completion_id,
        created=helpers.generate_timestamp(),
        model=model,
        usage=helpers.estimate_usage(content),
        choices=[
            ChatCompletionResponseChoice(
                index=0,
                message=MessageResponse(role="assistant", content=content),
                finish_reason="stop",
            )
        ],
    ).model_dump()


def _progress_notice(generation: GenerationRequest, binding: ModelBinding) -> str:
    return (
        f'🎨 Generating image with prompt: "{generation.prompt}" and aspect ratio: '
        f"{generation.aspect_ratio} using {binding.display_name}..."
    )


async def generate_chunks(
    stream: EventStream,
    *,
    queue: FalQueueClient,
    generation: GenerationRequest,
    binding: ModelBinding,
    completion_id: str,
    created: int,
) -> None:
    """Finish a streamed chat completion in the background.

    The role and progress chunks are already in ``stream``. Whatever happens
    here the stream ends with ``[DONE]`` and is closed exactly once.
    """
    model = binding.client_id
    try:
        try:
            completed = await queue.generate(generation, binding)
        except ProviderError as exc:
            logger.error("Streaming error for model {}: {}", binding.display_name, exc)
            content = f"\n\nAn error occurred with {binding.display_name}: {exc}"
        except Exception as exc:
            logger.exception("Unexpected streaming error for model {}", binding.display_name)
            content = f"\n\nAn error occurred with {binding.display_name}: {exc}"
        else:
            content = f"\n\nHere is the image:\n\n{helpers.image_markdown(completed.urls[0])}"

        stream.write(create_completion_data(completion_id=completion_id, created=created, model=model, chunk=content))
        stream.write(
            create_completion_data(completion_id=completion_id, created=created, model=model, finish_reason="stop")
        )
    finally:
        stream.write(DONE_EVENT)
        stream.close()


def streaming_response(
    runtime: GatewayRuntime,
    *,
    generation: GenerationRequest,
    binding: ModelBinding,
    completion_id: str,
) -> StreamingResponse:
    created = helpers.generate_timestamp()
    stream = EventStream()
    stream.write(
        create_completion_data(completion_id=completion_id, created=created, model=binding.client_id, role="assistant")
    )
    stream.write(
        create_completion_data(
            completion_id=completion_id,
            created=created,
            model=binding.client_id,
            chunk=_progress_notice(generation, binding),
        )
    )
    runtime.jobs.spawn(
        generate_chunks(
            stream,
            queue=runtime.queue,
            generation=generation,
            binding=binding,
            completion_id=completion_id,
            created=created,
        ),
        name=f"stream-{completion_id}",
    )
    return StreamingResponse(content=stream.reader(), status_code=200, headers=STREAM_HEADERS)


def text_streaming_response(*, completion_id: str, model: str, content: str) -> StreamingResponse:
    created = helpers.generate_timestamp()
    stream = EventStream()
    stream.write(create_completion_data(completion_id=completion_id, created=created, model=model, role="assistant"))
    stream.write(create_completion_data(completion_id=completion_id, created=created, model=model, chunk=content))
    stream.write(create_completion_data(completion_id=completion_id, created=created, model=model, finish_reason="stop"))
    stream.write(DONE_EVENT)
    stream.close()
    return StreamingResponse(content=stream.reader(), status_code=200, headers=STREAM_HEADERS)


async def non_streaming_response(
    runtime: GatewayRuntime,
    *,
    generation: GenerationRequest,
    binding: ModelBinding,
    completion_id: str,
) -> JSONResponse:
    try:
        completed = await runtime.queue.generate(generation, binding)
    except Exception as exc:
        if isinstance(exc, ProviderError):
            logger.error("Non-streaming error for model {}: {}", binding.display_name, exc)
        else:
            logger.exception("Unexpected non-streaming error for model {}", binding.display_name)
        content = (
            f'An error occurred for prompt "{generation.prompt}" with aspect ratio '
            f"{generation.aspect_ratio} using {binding.display_name}: {exc}"
        )
        return JSONResponse(
            create_completion_response(completion_id=completion_id, model=binding.client_id, content=content),
            status_code=500,
        )

    content = (
        f'Generated image with prompt: "{generation.prompt}" and aspect ratio: '
        f"{generation.aspect_ratio} using {binding.display_name}\n\n{helpers.image_markdown(completed.urls[0])}"
    )
    return JSONResponse(create_completion_response(completion_id=completion_id, model=binding.client_id, content=content))


@app.post("/chat/completions", response_model=None)
@app.post("/v1/chat/completions", response_model=None)
async def chat_completions(
    request: Request,
    _auth: None = Depends(require_service_auth),
) -> Union[StreamingResponse, JSONResponse]:
    runtime = _runtime()
    data = await _parse_body(request, ChatData)
    binding = runtime.registry.resolve(data.model)
    request.state.model = binding.client_id

    if not isinstance(data.messages, list):
        _openai_http_error(400, "invalid_request_error", "Invalid messages format")
    streaming = bool(data.stream)
    completion_id = f"chatcmpl-{helpers.generate_completion_id()}"

    prompt, size = extract_size_directive(last_user_prompt(data.messages) or "")
    if not prompt.strip():
        if not size:
            if streaming:
                return text_streaming_response(
                    completion_id=completion_id, model=binding.client_id, content=MISSING_PROMPT_MESSAGE
                )
            return JSONResponse(
                create_completion_response(
                    completion_id=completion_id, model=binding.client_id, content=MISSING_PROMPT_MESSAGE
                )
            )
        prompt = PLACEHOLDER_PROMPT

    generation = GenerationRequest(
        prompt=prompt,
        image_count=1,
        aspect_ratio=normalize_aspect_ratio(size or data.size or DEFAULT_SIZE),
    )

    if streaming:
        return streaming_response(runtime, generation=generation, binding=binding, completion_id=completion_id)
    return await non_streaming_response(runtime, generation=generation, binding=binding, completion_id=completion_id)


async def build_image_data(
    queue: FalQueueClient,
    completed: JobCompleted,
    response_format: str,
) -> list[ImageData]:
    if response_format == "b64_json":
        encoded = await asyncio.gather(*(queue.fetch_image_b64(url) for url in completed.urls))
        return [ImageData(b64_json=item) for item in encoded]
    return [ImageData(url=url) for url in completed.urls]


@app.post("/images/generations", response_model=None)
@app.post("/v1/images/generations", response_model=None)
async def create_images(
    request: Request,
    _auth: None = Depends(require_service_auth),
) -> JSONResponse:
    runtime = _runtime()
    data = await _parse_body(request, ImagesGenData)
    binding = runtime.registry.resolve(data.model)
    request.state.model = binding.client_id

    prompt = data.prompt
    if not prompt:
        _openai_http_error(400, "invalid_request_error", "Parameter 'prompt' is required.")
    if not isinstance(prompt, str):
        _openai_http_error(400, "invalid_request_error", "Invalid prompt")
    response_format = data.response_format or "url"
    if response_format not in RESPONSE_FORMATS:
        _openai_http_error(
            400, "invalid_request_error", "Parameter 'response_format' must be 'url' or 'b64_json'."
        )

    generation = GenerationRequest.build(prompt, data.n, data.size or DEFAULT_SIZE)
    try:
        completed = await runtime.queue.generate(generation, binding)
        image_data = await build_image_data(runtime.queue, completed, response_format)
    except ProviderError as exc:
        logger.error("Error in create_images for model {}: {}", binding.display_name, exc)
        _openai_http_error(500, "api_error", str(exc) or "Failed to generate image.")

    return JSONResponse(
        ImagesResponse(
            created=helpers.generate_timestamp(),
            data=image_data,
            model=binding.client_id,
        ).model_dump(exclude_none=True)
    )


@app.api_route(
    "/{full_path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    response_model=None,
)
async def unmatched_path(
    full_path: str,
    _auth: None = Depends(require_service_auth),
) -> JSONResponse:
    _openai_http_error(404, "not_found_error", "Not Found")


if __name__ == "__main__":
    uvicorn.run("fal_gateway.openai.api:app", host="127.0.0.1", port=8000, workers=1)


def start_server(address: str = "127.0.0.1", port: Union[str, int] = "8000"):
    uvicorn.run("fal_gateway.openai.api:app", host=address, port=int(port), workers=1)
