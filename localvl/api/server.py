"""
localvl :: API Server (aiohttp)

Thin HTTP layer over one InferenceEngine.
text -> tokenize -> prefill/decode -> detokenize -> text

Generation is blocking, so each request is handed to the default executor;
the engine lock serializes them.

Endpoints:
    GET  /health        -> liveness + whether a model is loaded
    POST /api/greet     -> greeting (connectivity check)
    POST /v1/generate   -> text (or image + text) generation
    POST /v1/chat       -> chat messages through the chat template
    GET  /v1/status     -> engine status
    GET  /metrics       -> Prometheus exposition
    GET  /api/log-level -> current log level
    POST /api/log-level -> change the log level at runtime
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass
from typing import Dict, List, Optional

from aiohttp import web

from localvl.core.chat_template import ChatTemplate
from localvl.core.errors import (
    EngineRuntimeError,
    InputError,
    LocalVLError,
    NotInitializedError,
)
from localvl.core.logging import get_log_level, get_logger, set_log_level
from localvl.engine.engine import GenerationResult, InferenceEngine

logger = get_logger("localvl.server")

DEFAULT_MAX_TOKENS = 256


@dataclass
class GenerateRequest:
    """Parsed body of /v1/generate and /v1/chat."""
    prompt: str
    max_tokens: int = DEFAULT_MAX_TOKENS
    image: Optional[bytes] = None

    def validate(self) -> Optional[str]:
        """Return error message if invalid, None if OK."""
        if not isinstance(self.prompt, str) or not self.prompt:
            return "'prompt' must be a non-empty string"
        if not isinstance(self.max_tokens, int) or isinstance(self.max_tokens, bool):
            return "'max_tokens' must be an integer"
        if self.max_tokens < 0:
            return "'max_tokens' must be >= 0"
        return None


def error_response(message: str, error_type: str, status: int) -> web.Response:
    return web.json_response({"error": {"message": message, "type": error_type}}, status=status)


def status_for(error: LocalVLError) -> int:
    if isinstance(error, InputError):
        return 400
    if isinstance(error, NotInitializedError):
        return 503
    return 500


def _decode_image(value) -> Optional[bytes]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InputError("'image' must be a base64 string")
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InputError(f"'image' is not valid base64: {e}") from e


class InferenceServer:
    """HTTP server around an InferenceEngine (loaded or not)."""

    def __init__(
        self,
        engine: InferenceEngine,
        chat_template: Optional[ChatTemplate] = None,
        host: str = "127.0.0.1",
        port: int = 8000,
        model_name: str = "localvl",
    ):
        self.engine = engine
        self.chat_template = chat_template or ChatTemplate()
        self.host = host
        self.port = port
        self.model_name = model_name

    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------

    async def _read_json(self, request: web.Request) -> Dict:
        try:
            body = await request.json()
        except ValueError as e:
            raise InputError("Invalid JSON in request body") from e
        if not isinstance(body, dict):
            raise InputError("Request body must be a JSON object")
        return body

    async def _run_generation(self, req: GenerateRequest) -> GenerationResult:
        loop = asyncio.get_running_loop()
        if req.image is not None:
            return await loop.run_in_executor(
                None, self.engine.generate_multimodal_result, req.image, req.prompt, req.max_tokens,
            )
        return await loop.run_in_executor(
            None, self.engine.generate_result, req.prompt, req.max_tokens,
        )

    def _result_response(self, result: GenerationResult) -> web.Response:
        return web.json_response({
            "id": f"gen-{result.request_id}",
            "model": self.model_name,
            "text": result.text,
            "finish_reason": result.finish_reason,
            "usage": {
                "prompt_tokens": result.prompt_tokens,
                "completion_tokens": len(result.token_ids),
                "total_tokens": result.prompt_tokens + len(result.token_ids),
            },
            "elapsed_ms": round(result.elapsed_ms, 2),
        })

    # ---------------------------------------------------------------------
    # Handlers
    # ---------------------------------------------------------------------

    async def handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        return web.json_response({
            "status": "ok",
            "message": "Service is running",
            "model_loaded": self.engine.is_loaded(),
        })

    async def handle_greet(self, request: web.Request) -> web.Response:
        """POST /api/greet"""
        body = await self._read_json(request)
        name = body.get("name")
        if not isinstance(name, str) or not name.strip():
            return error_response("Missing 'name' field", "invalid_request_error", 400)
        return web.json_response({"message": f"Hello, {name.strip()}! Welcome to localvl."})

    async def handle_generate(self, request: web.Request) -> web.Response:
        """POST /v1/generate"""
        body = await self._read_json(request)
        req = GenerateRequest(
            prompt=body.get("prompt"),
            max_tokens=body.get("max_tokens", DEFAULT_MAX_TOKENS),
            image=_decode_image(body.get("image")),
        )
        error = req.validate()
        if error:
            return error_response(error, "invalid_request_error", 400)
        return self._result_response(await self._run_generation(req))

    async def handle_chat(self, request: web.Request) -> web.Response:
        """POST /v1/chat"""
        body = await self._read_json(request)
        messages: List[Dict[str, str]] = body.get("messages")
        if not isinstance(messages, list) or not messages:
            return error_response("'messages' must be a non-empty list", "invalid_request_error", 400)
        for msg in messages:
            if not isinstance(msg, dict) or "role" not in msg or "content" not in msg:
                return error_response(
                    "each message needs 'role' and 'content'", "invalid_request_error", 400
                )
        req = GenerateRequest(
            prompt=self.chat_template.apply(messages),
            max_tokens=body.get("max_tokens", DEFAULT_MAX_TOKENS),
            image=_decode_image(body.get("image")),
        )
        error = req.validate()
        if error:
            return error_response(error, "invalid_request_error", 400)
        return self._result_response(await self._run_generation(req))

    async def handle_status(self, request: web.Request) -> web.Response:
        """GET /v1/status"""
        return web.json_response(self.engine.status())

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """GET /metrics"""
        return web.Response(
            body=self.engine.metrics.render(),
            headers={"Content-Type": self.engine.metrics.content_type},
        )

    async def handle_get_log_level(self, request: web.Request) -> web.Response:
        """GET /api/log-level"""
        return web.json_response({"level": get_log_level()})

    async def handle_set_log_level(self, request: web.Request) -> web.Response:
        """POST /api/log-level  {"level": "debug"}"""
        body = await self._read_json(request)
        level = body.get("level")
        if not isinstance(level, str):
            raise InputError("'level' must be a string")
        try:
            applied = set_log_level(level)
        except ValueError as e:
            raise InputError(str(e)) from e
        logger.info(f"Log level set to {applied}")
        return web.json_response({
            "success": True,
            "message": f"Log level set to {applied.lower()}",
            "current_level": get_log_level(),
        })

    # ---------------------------------------------------------------------
    # Middleware + app
    # ---------------------------------------------------------------------

    @web.middleware
    async def error_middleware(self, request, handler):
        """Map engine errors to JSON error responses."""
        try:
            return await handler(request)
        except LocalVLError as e:
            status = status_for(e)
            if status >= 500:
                logger.error(f"{request.method} {request.path} failed: {type(e).__name__}: {e}")
            else:
                logger.info(f"{request.method} {request.path} rejected: {e}")
            error_type = "invalid_request_error" if status == 400 else (
                "service_unavailable" if status == 503 else "engine_error"
            )
            return error_response(str(e), error_type, status)

    @web.middleware
    async def cors_middleware(self, request, handler):
        """Add CORS headers to all responses."""
        if request.method == "OPTIONS":
            resp = web.Response()
        else:
            resp = await handler(request)
        resp.headers["Access-Control-Allow-Origin"] = "*"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return resp

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self.cors_middleware, self.error_middleware])
        app.router.add_get("/health", self.handle_health)
        app.router.add_post("/api/greet", self.handle_greet)
        app.router.add_post("/v1/generate", self.handle_generate)
        app.router.add_post("/v1/chat", self.handle_chat)
        app.router.add_get("/v1/status", self.handle_status)
        app.router.add_get("/metrics", self.handle_metrics)
        app.router.add_get("/api/log-level", self.handle_get_log_level)
        app.router.add_post("/api/log-level", self.handle_set_log_level)
        for path in ("/api/greet", "/api/log-level", "/v1/generate", "/v1/chat"):
            app.router.add_route("OPTIONS", path, self._handle_options)
        return app

    async def _handle_options(self, request):
        return web.Response()

    def run(self):
        logger.info(f"localvl :: {self.model_name}")
        logger.info(f"  http://{self.host}:{self.port}")
        logger.info("  POST /v1/generate | POST /v1/chat | GET /health | GET /metrics")
        if not self.engine.is_loaded():
            logger.warning("No model loaded: generation endpoints will answer 503")
        web.run_app(self.create_app(), host=self.host, port=self.port, print=None)


def serve(
    engine: InferenceEngine,
    host: str = "127.0.0.1",
    port: int = 8000,
    chat_template: Optional[ChatTemplate] = None,
    model_name: str = "localvl",
):
    InferenceServer(engine, chat_template, host, port, model_name).run()
