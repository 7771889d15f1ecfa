"""
localvl :: Test API Server

Tests aiohttp endpoints without starting a real server:
  - GET /health, POST /api/greet
  - POST /v1/generate (text and image), POST /v1/chat
  - GET /v1/status, GET /metrics
  - error mapping: 400 bad input, 503 no model
  - /health and /v1/status answer while a generation is running
  - GET/POST /api/log-level

Uses aiohttp test_utils for in-process testing.
"""

import asyncio
import base64
import io
import logging
import pytest
import pytest_asyncio
import torch
import time
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aiohttp.test_utils import TestClient, TestServer
from PIL import Image

from localvl.api.server import GenerateRequest, InferenceServer, status_for
from localvl.core.errors import ForwardError, InputError, NotInitializedError, PromptTooLongError
from localvl.core.sampling import GenerationConfig
from localvl.engine.engine import InferenceEngine
from localvl.models.backends import DenseModel
from localvl.models.config import ModelConfig, TextConfig, VisionConfig
from localvl.models.transformer import TextDecoder
from localvl.vision.tower import VisionTower

SPECIALS = ["<|endoftext|>", "<|im_start|>", "<|im_end|>", "<|image_pad|>", "<|vision_start|>", "<|vision_end|>"]


class TinyTokenizer:
    """Specials first, then printable ASCII; specials are matched greedily."""

    chars = [chr(c) for c in range(32, 127)] + ["\n"]

    def encode(self, text):
        ids = []
        i = 0
        while i < len(text):
            for n, s in enumerate(SPECIALS):
                if text.startswith(s, i):
                    ids.append(n)
                    i += len(s)
                    break
            else:
                if text[i] in self.chars:
                    ids.append(len(SPECIALS) + self.chars.index(text[i]))
                i += 1
        return ids

    def decode(self, ids):
        return "".join(self.chars[t - len(SPECIALS)] for t in ids if t >= len(SPECIALS))

    def token_to_id(self, token):
        return SPECIALS.index(token) if token in SPECIALS else None

    @property
    def vocab_size(self):
        return len(SPECIALS) + len(self.chars)


def tiny_model():
    text = TextConfig(
        architecture="qwen2", vocab_size=TinyTokenizer().vocab_size, hidden_size=32,
        intermediate_size=64, num_hidden_layers=1, num_attention_heads=4, num_key_value_heads=2,
        rope_theta=10000.0, attention_bias=True, use_qk_norm=False, mrope_section=[2, 1, 1],
    )
    vision = VisionConfig(
        depth=1, hidden_size=16, num_heads=2, intermediate_size=32, patch_size=4,
        spatial_merge_size=2, out_hidden_size=32, min_pixels=8 * 8, max_pixels=32 * 32,
    )
    config = ModelConfig(text=text, vision=vision).validate()
    torch.manual_seed(0)
    return DenseModel(config, TextDecoder(text), torch.device("cpu"), VisionTower(vision))


def png_base64(size=(16, 16), color=(200, 30, 30)):
    buf = io.BytesIO()
    Image.new("RGB", size, color=color).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode()


@pytest.fixture
def engine():
    """Engine with no model loaded."""
    return InferenceEngine(device="cpu")


@pytest.fixture
def loaded_engine():
    return InferenceEngine(device="cpu").attach(
        tiny_model(), TinyTokenizer(), GenerationConfig(temperature=0.0, max_seq_len=64)
    )


@pytest_asyncio.fixture
async def client(engine):
    app = InferenceServer(engine, model_name="test-model", port=0).create_app()
    async with TestClient(TestServer(app)) as c:
        yield c


@pytest_asyncio.fixture
async def loaded_client(loaded_engine):
    app = InferenceServer(loaded_engine, model_name="test-model", port=0).create_app()
    async with TestClient(TestServer(app)) as c:
        yield c


# =========================================================================
# Service endpoints
# =========================================================================

@pytest.mark.asyncio
async def test_health_unloaded(client):
    resp = await client.get("/health")
    assert resp.status == 200
    data = await resp.json()
    assert data["status"] == "ok"
    assert data["message"] == "Service is running"
    assert data["model_loaded"] is False


@pytest.mark.asyncio
async def test_health_loaded(loaded_client):
    data = await (await loaded_client.get("/health")).json()
    assert data["model_loaded"] is True


@pytest.mark.asyncio
async def test_greet(client):
    resp = await client.post("/api/greet", json={"name": "Ada"})
    assert resp.status == 200
    assert (await resp.json())["message"] == "Hello, Ada! Welcome to localvl."


@pytest.mark.asyncio
async def test_greet_missing_name(client):
    for body in ({}, {"name": "   "}, {"name": 3}):
        resp = await client.post("/api/greet", json=body)
        assert resp.status == 400
        data = await resp.json()
        assert data["error"]["type"] == "invalid_request_error"


@pytest.mark.asyncio
async def test_greet_invalid_json(client):
    resp = await client.post("/api/greet", data=b"{nope", headers={"Content-Type": "application/json"})
    assert resp.status == 400
    assert "Invalid JSON" in (await resp.json())["error"]["message"]


@pytest.mark.asyncio
async def test_status_unloaded(client):
    data = await (await client.get("/v1/status")).json()
    assert data["loaded"] is False
    assert data["device"] == "cpu"


@pytest.mark.asyncio
async def test_cors_headers(client):
    resp = await client.options("/v1/generate")
    assert resp.status == 200
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_unknown_route(client):
    resp = await client.get("/v1/nothing")
    assert resp.status == 404


# =========================================================================
# Generation
# =========================================================================

@pytest.mark.asyncio
async def test_generate_without_model(client):
    resp = await client.post("/v1/generate", json={"prompt": "Hello", "max_tokens": 4})
    assert resp.status == 503
    data = await resp.json()
    assert data["error"]["type"] == "service_unavailable"
    assert "not initialized" in data["error"]["message"]


@pytest.mark.asyncio
async def test_generate(loaded_client):
    resp = await loaded_client.post("/v1/generate", json={"prompt": "Hello", "max_tokens": 4})
    assert resp.status == 200
    data = await resp.json()
    assert data["model"] == "test-model"
    assert data["id"].startswith("gen-")
    assert data["finish_reason"] in ("stop", "length")
    usage = data["usage"]
    assert usage["prompt_tokens"] == 5
    assert usage["completion_tokens"] <= 4
    assert usage["total_tokens"] == usage["prompt_tokens"] + usage["completion_tokens"]


@pytest.mark.asyncio
async def test_generate_deterministic(loaded_client):
    body = {"prompt": "abc", "max_tokens": 6}
    first = await (await loaded_client.post("/v1/generate", json=body)).json()
    second = await (await loaded_client.post("/v1/generate", json=body)).json()
    assert first["text"] == second["text"]


@pytest.mark.asyncio
async def test_generate_zero_tokens(loaded_client):
    data = await (await loaded_client.post("/v1/generate", json={"prompt": "Hi", "max_tokens": 0})).json()
    assert data["text"] == ""
    assert data["usage"]["completion_tokens"] == 0


@pytest.mark.asyncio
async def test_generate_bad_request(loaded_client):
    for body in ({}, {"prompt": ""}, {"prompt": "x", "max_tokens": -1}, {"prompt": "x", "max_tokens": "5"}):
        resp = await loaded_client.post("/v1/generate", json=body)
        assert resp.status == 400, body


@pytest.mark.asyncio
async def test_generate_prompt_too_long(loaded_client):
    resp = await loaded_client.post("/v1/generate", json={"prompt": "x" * 100, "max_tokens": 1})
    assert resp.status == 400
    assert "exceeds max_seq_len=64" in (await resp.json())["error"]["message"]


@pytest.mark.asyncio
async def test_generate_with_image(loaded_client):
    resp = await loaded_client.post("/v1/generate", json={
        "prompt": "What?", "max_tokens": 2, "image": "data:image/png;base64," + png_base64(),
    })
    assert resp.status == 200
    data = await resp.json()
    # 16x16 image, 8 px per merged token -> 4 pads + start/end + 5 chars
    assert data["usage"]["prompt_tokens"] == 4 + 2 + 5


@pytest.mark.asyncio
async def test_generate_bad_image(loaded_client):
    resp = await loaded_client.post("/v1/generate", json={"prompt": "x", "image": "!!!not base64"})
    assert resp.status == 400
    resp = await loaded_client.post("/v1/generate", json={
        "prompt": "x", "image": base64.b64encode(b"not an image").decode(),
    })
    assert resp.status == 400


@pytest.mark.asyncio
async def test_chat(loaded_client):
    resp = await loaded_client.post("/v1/chat", json={
        "messages": [{"role": "user", "content": "Hi"}], "max_tokens": 3,
    })
    assert resp.status == 200
    data = await resp.json()
    # <|im_start|> user \n Hi <|im_end|> \n <|im_start|> assistant \n
    assert data["usage"]["prompt_tokens"] == 1 + 4 + 1 + 2 + 1 + 1 + 1 + 9 + 1


@pytest.mark.asyncio
async def test_chat_bad_messages(loaded_client):
    for body in ({}, {"messages": []}, {"messages": ["hi"]}, {"messages": [{"role": "user"}]}):
        resp = await loaded_client.post("/v1/chat", json=body)
        assert resp.status == 400, body


@pytest.mark.asyncio
async def test_status_and_metrics(loaded_client):
    await loaded_client.post("/v1/generate", json={"prompt": "Hello", "max_tokens": 2})
    status = await (await loaded_client.get("/v1/status")).json()
    assert status["loaded"] is True
    assert status["backend"] == "dense"
    assert status["vision"] is True
    assert status["requests_served"] == 1

    resp = await loaded_client.get("/metrics")
    assert resp.status == 200
    assert resp.headers["Content-Type"].startswith("text/plain")
    text = await resp.text()
    assert "localvl_requests_total 1.0" in text
    assert "localvl_model_loaded 1.0" in text


@pytest.mark.asyncio
async def test_health_answers_during_generation():
    model = tiny_model()
    forward = model.forward

    def slow_forward(*args, **kwargs):
        time.sleep(0.3)
        return forward(*args, **kwargs)

    model.forward = slow_forward
    engine = InferenceEngine(device="cpu").attach(
        model, TinyTokenizer(), GenerationConfig(temperature=0.0, max_seq_len=64)
    )
    app = InferenceServer(engine, model_name="test-model", port=0).create_app()
    async with TestClient(TestServer(app)) as c:

        async def generate():
            return await c.post("/v1/generate", json={"prompt": "Hello", "max_tokens": 4})

        pending = asyncio.ensure_future(generate())
        await asyncio.sleep(0.1)

        start = time.perf_counter()
        health = await c.get("/health")
        status = await c.get("/v1/status")
        elapsed = time.perf_counter() - start

        assert health.status == 200
        assert (await health.json())["model_loaded"] is True
        assert (await status.json())["loaded"] is True
        assert elapsed < 0.2
        assert not pending.done()

        resp = await pending
        assert resp.status == 200


# =========================================================================
# Runtime log level
# =========================================================================

@pytest.fixture
def restore_log_level():
    before = logging.getLogger("localvl").level
    yield
    logging.getLogger("localvl").setLevel(before)


@pytest.mark.asyncio
async def test_get_log_level(client, restore_log_level):
    logging.getLogger("localvl").setLevel(logging.WARNING)
    resp = await client.get("/api/log-level")
    assert resp.status == 200
    assert (await resp.json()) == {"level": "warning"}


@pytest.mark.asyncio
async def test_set_log_level(client, restore_log_level):
    resp = await client.post("/api/log-level", json={"level": "debug"})
    assert resp.status == 200
    data = await resp.json()
    assert data["success"] is True
    assert data["current_level"] == "debug"
    assert "debug" in data["message"]
    assert logging.getLogger("localvl").level == logging.DEBUG

    data = await (await client.get("/api/log-level")).json()
    assert data["level"] == "debug"


@pytest.mark.asyncio
async def test_set_log_level_alias(client, restore_log_level):
    data = await (await client.post("/api/log-level", json={"level": "warn"})).json()
    assert data["current_level"] == "warning"


@pytest.mark.asyncio
async def test_set_log_level_rejected(client, restore_log_level):
    logging.getLogger("localvl").setLevel(logging.INFO)
    for body in ({"level": "loud"}, {"level": 3}, {}):
        resp = await client.post("/api/log-level", json=body)
        assert resp.status == 400
        assert (await resp.json())["error"]["type"] == "invalid_request_error"
    assert logging.getLogger("localvl").level == logging.INFO


# =========================================================================
# Request parsing and error mapping
# =========================================================================

class TestRequestValidation:

    def test_valid(self):
        assert GenerateRequest(prompt="hi", max_tokens=0).validate() is None

    def test_bool_max_tokens(self):
        assert GenerateRequest(prompt="hi", max_tokens=True).validate() is not None

    def test_status_mapping(self):
        assert status_for(InputError("x")) == 400
        assert status_for(PromptTooLongError(10, 5)) == 400
        assert status_for(NotInitializedError()) == 503
        assert status_for(ForwardError("boom")) == 500


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
