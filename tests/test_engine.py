"""
localvl :: Test Inference Engine

End-to-end generation on a tiny dense model with a character tokenizer:
  - greedy generation is reproducible (same prompt -> same tokens)
  - max_new_tokens=0 runs only the prefill
  - forward tokens across a generation = prompt + generated (KV cache reuse)
  - prompt longer than max_seq_len rejected before any forward call
  - engine without weights raises NotInitializedError
  - failed load keeps the previous model
  - EOS ends generation without being emitted
  - image + text through the vision tower
  - metrics and status

Run:
    python -m pytest tests/test_engine.py -v
"""

import re
import threading
import pytest
import torch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from PIL import Image
from safetensors.torch import save_file

from localvl.core.chat_template import IMAGE_PAD, VISION_END, VISION_START
from localvl.core.errors import (
    EngineRuntimeError,
    InputError,
    LoadError,
    NotInitializedError,
    PromptTooLongError,
    TokenizerError,
)
from localvl.core.sampling import GenerationConfig
from localvl.engine.engine import GenerationLoop, InferenceEngine, init_engine
from localvl.models.backends import DenseModel, WeightSource
from localvl.models.config import ModelConfig, TextConfig, VisionConfig
from localvl.models.transformer import TextDecoder
from localvl.vision.tower import VisionTower


class CharTokenizer:
    """Printable ASCII, one id per character, plus a few special tokens."""

    SPECIALS = ["<|endoftext|>", "<|im_start|>", "<|im_end|>", IMAGE_PAD, VISION_START, VISION_END]

    def __init__(self, specials=None):
        self.specials = list(self.SPECIALS if specials is None else specials)
        self.chars = [chr(c) for c in range(32, 127)]
        self._special_re = re.compile("|".join(re.escape(s) for s in self.specials)) if self.specials else None

    def encode(self, text):
        if not isinstance(text, str):
            raise TokenizerError("expected str")
        ids = []
        pos = 0
        for m in (self._special_re.finditer(text) if self._special_re else []):
            ids.extend(self._chars(text[pos:m.start()]))
            ids.append(self.specials.index(m.group()))
            pos = m.end()
        ids.extend(self._chars(text[pos:]))
        return ids

    def _chars(self, text):
        return [len(self.specials) + self.chars.index(c) for c in text if c in self.chars]

    def decode(self, token_ids):
        out = []
        for t in token_ids:
            if not 0 <= t < self.vocab_size:
                raise TokenizerError(f"id {t} out of range")
            if t >= len(self.specials):
                out.append(self.chars[t - len(self.specials)])
        return "".join(out)

    def token_to_id(self, token):
        return self.specials.index(token) if token in self.specials else None

    @property
    def vocab_size(self):
        return len(self.specials) + len(self.chars)


VOCAB = CharTokenizer().vocab_size


def tiny_config(with_vision=False):
    text = TextConfig(
        architecture="qwen3",
        vocab_size=VOCAB,
        hidden_size=64,
        intermediate_size=128,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        rope_theta=10000.0,
        tie_word_embeddings=False,
        attention_bias=False,
        use_qk_norm=True,
        mrope_section=[2, 3, 3] if with_vision else None,
    )
    vision = None
    if with_vision:
        vision = VisionConfig(
            depth=1, hidden_size=32, num_heads=4, intermediate_size=64,
            patch_size=4, temporal_patch_size=2, spatial_merge_size=2,
            out_hidden_size=64, min_pixels=8 * 8, max_pixels=32 * 32,
        )
    return ModelConfig(text=text, vision=vision, torch_dtype="float32").validate()


def write_model(directory, with_vision=False, seed=0):
    config = tiny_config(with_vision)
    torch.manual_seed(seed)
    state = {
        (k if k == "lm_head.weight" else "model." + k): v.clone()
        for k, v in TextDecoder(config.text).state_dict().items()
    }
    if with_vision:
        state.update({"visual." + k: v.clone() for k, v in VisionTower(config.vision).state_dict().items()})
    path = os.path.join(directory, "model.safetensors")
    save_file(state, path)
    return path, config


class CountingModel:
    """Wraps a model and records the length of every forward call."""

    def __init__(self, model):
        self.model = model
        self.calls = []

    def __getattr__(self, name):
        return getattr(self.model, name)

    def forward(self, token_ids, position_offset, **kwargs):
        self.calls.append(int(torch.as_tensor(token_ids).shape[-1]))
        return self.model.forward(token_ids, position_offset, **kwargs)


@pytest.fixture
def dense_files(tmp_path):
    return write_model(str(tmp_path))


@pytest.fixture
def engine(dense_files):
    path, config = dense_files
    return InferenceEngine(device="cpu").load(
        WeightSource.of(path, config), CharTokenizer(), GenerationConfig(temperature=0.0)
    )


def counting(engine):
    loaded = engine._loaded
    wrapped = CountingModel(loaded.model)
    loaded.model = wrapped
    return wrapped


class TestGeneration:

    def test_greedy_reproducible(self, engine):
        a = engine.generate_result("Hello", 5)
        b = engine.generate_result("Hello", 5)
        assert a.token_ids == b.token_ids
        assert a.text == b.text
        assert len(a.token_ids) <= 5

    def test_reproducible_across_loads(self, dense_files):
        path, config = dense_files
        texts = []
        for _ in range(2):
            e = init_engine(WeightSource.of(path, config), CharTokenizer(),
                            GenerationConfig(temperature=0.0), device="cpu")
            texts.append(e.generate("Hello", 5))
        assert texts[0] == texts[1]

    def test_zero_new_tokens(self, engine):
        spy = counting(engine)
        result = engine.generate_result("Hello", 0)
        assert result.text == ""
        assert result.token_ids == []
        assert spy.calls == [5]
        assert result.forward_calls == 1

    def test_forward_tokens_linear(self, engine):
        spy = counting(engine)
        result = engine.generate_result("Hello there", 8)
        n = len(result.token_ids)
        prompt = result.prompt_tokens
        assert prompt == 11
        assert spy.calls[0] == prompt
        assert all(c == 1 for c in spy.calls[1:])
        assert result.forward_calls == 1 + n
        assert result.forward_tokens == prompt + n
        assert sum(spy.calls) == prompt + n

    def test_seeded_sampling_reproducible(self, dense_files):
        path, config = dense_files
        gen = GenerationConfig(temperature=1.0, top_k=20, top_p=0.95, seed=42)
        e = InferenceEngine(device="cpu").load(WeightSource.of(path, config), CharTokenizer(), gen)
        assert e.generate("abc", 10) == e.generate("abc", 10)

    def test_eos_stops_without_emitting(self, engine):
        loaded = engine._loaded
        eos = loaded.eos_token_id
        assert eos == 0

        class EosModel(CountingModel):
            def forward(self, token_ids, position_offset, **kwargs):
                logits = super().forward(token_ids, position_offset, **kwargs)
                logits = torch.full_like(logits, -10.0)
                logits[..., eos if len(self.calls) > 2 else 50] = 10.0
                return logits

        loaded.model = EosModel(loaded.model)
        result = engine.generate_result("Hi", 10)
        assert result.finish_reason == "stop"
        assert len(result.token_ids) == 2
        assert eos not in result.token_ids

    def test_length_finish(self, engine):
        loaded = engine._loaded

        class NoEosModel(CountingModel):
            def forward(self, token_ids, position_offset, **kwargs):
                logits = super().forward(token_ids, position_offset, **kwargs).clone()
                logits[..., 0] = -1e9
                return logits

        loaded.model = NoEosModel(loaded.model)
        result = engine.generate_result("Hi", 4)
        assert result.finish_reason == "length"
        assert len(result.token_ids) == 4


class TestRejection:

    def test_prompt_too_long(self, dense_files):
        path, config = dense_files
        e = InferenceEngine(device="cpu").load(
            WeightSource.of(path, config), CharTokenizer(), GenerationConfig(max_seq_len=8)
        )
        spy = counting(e)
        with pytest.raises(PromptTooLongError) as info:
            e.generate("this prompt is far too long", 4)
        assert isinstance(info.value, InputError)
        assert spy.calls == []

    def test_empty_prompt(self, engine):
        with pytest.raises(InputError):
            engine.generate("", 4)

    def test_negative_max_tokens(self, engine):
        with pytest.raises(InputError):
            engine.generate("Hi", -1)

    def test_not_initialized(self):
        e = InferenceEngine(device="cpu")
        assert not e.is_loaded()
        with pytest.raises(NotInitializedError) as info:
            e.generate("Hello", 5)
        assert isinstance(info.value, RuntimeError)
        assert "not initialized" in str(info.value)
        with pytest.raises(NotInitializedError):
            e.check_forward()

    def test_failure_counted(self, engine):
        with pytest.raises(InputError):
            engine.generate("", 1)
        text = engine.metrics.render().decode()
        assert 'localvl_request_failures_total{error="InputError"} 1.0' in text

    def test_loop_runs_once(self, engine):
        loaded = engine._loaded
        loop = GenerationLoop(loaded.model, loaded.tokenizer, loaded.config, loaded.eos_token_id)
        loop.run([40, 41], 1)
        with pytest.raises(EngineRuntimeError):
            loop.run([40, 41], 1)


class TestLifecycle:

    def test_failed_load_keeps_previous(self, engine, tmp_path):
        before = engine.generate("Hello", 3)
        bad = tmp_path / "bad"
        bad.mkdir()
        (bad / "model.safetensors").write_bytes(b"\x00" * 32)
        with pytest.raises(LoadError):
            engine.load(WeightSource.of(str(bad / "model.safetensors"), tiny_config()), CharTokenizer())
        assert engine.is_loaded()
        assert engine.generate("Hello", 3) == before

    def test_unload(self, engine):
        engine.unload()
        assert not engine.is_loaded()
        with pytest.raises(NotInitializedError):
            engine.generate("Hello", 1)
        assert "localvl_model_loaded 0.0" in engine.metrics.render().decode()

    def test_status(self, engine):
        status = engine.status()
        assert status["loaded"] is True
        assert status["backend"] == "dense"
        assert status["vision"] is False
        assert status["generation"]["temperature"] == 0.0

    def test_check_forward(self, engine):
        assert engine.check_forward(6) == [1, 6, VOCAB]
        with pytest.raises(InputError):
            engine.check_forward(0)

    def test_concurrent_callers_serialize(self, engine):
        results = []
        errors = []

        def worker():
            try:
                results.append(engine.generate("Hello", 4))
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert not errors
        assert len(set(results)) == 1

    def test_metrics_after_request(self, engine):
        result = engine.generate_result("Hello", 3)
        text = engine.metrics.render().decode()
        assert "localvl_requests_total 1.0" in text
        assert f"localvl_tokens_prompt_total {float(result.prompt_tokens)}" in text


class TestMultimodal:

    @pytest.fixture
    def vl_engine(self, tmp_path):
        path, config = write_model(str(tmp_path), with_vision=True)
        return InferenceEngine(device="cpu").load(
            WeightSource.of(path, config), CharTokenizer(), GenerationConfig(temperature=0.0)
        )

    def test_image_generation(self, vl_engine):
        spy = counting(vl_engine)
        img = Image.new("RGB", (16, 24), color=(120, 60, 200))
        result = vl_engine.generate_multimodal_result(img, "Describe:", 3)
        # 16x24 at 8 px per merged token -> 2x3 = 6 image tokens + start/end + prompt
        assert result.prompt_tokens == 6 + 2 + len("Describe:")
        assert spy.calls[0] == result.prompt_tokens
        assert result.forward_tokens == result.prompt_tokens + len(result.token_ids)

    def test_image_reproducible(self, vl_engine):
        img = Image.new("RGB", (16, 16), color=(1, 2, 3))
        assert vl_engine.generate_multimodal(img, "x", 3) == vl_engine.generate_multimodal(img, "x", 3)

    def test_image_changes_prefill(self, vl_engine):
        loaded = vl_engine._loaded
        first_logits = []

        class Capture(CountingModel):
            def forward(self, token_ids, position_offset, **kwargs):
                logits = super().forward(token_ids, position_offset, **kwargs)
                if position_offset == 0:
                    first_logits.append(logits[0, -1].clone())
                return logits

        loaded.model = Capture(loaded.model)
        vl_engine.generate_multimodal(Image.new("RGB", (16, 16), color=(0, 0, 0)), "x", 0)
        vl_engine.generate_multimodal(Image.new("RGB", (16, 16), color=(255, 255, 255)), "x", 0)
        assert not torch.allclose(first_logits[0], first_logits[1])

    def test_text_only_model_rejects_image(self, engine):
        with pytest.raises(InputError, match="vision"):
            engine.generate_multimodal(Image.new("RGB", (16, 16)), "x", 1)

    def test_bad_image(self, vl_engine):
        with pytest.raises(InputError):
            vl_engine.generate_multimodal(b"garbage", "x", 1)

    def test_dense_model_has_tower(self, vl_engine):
        assert isinstance(vl_engine._loaded.model, DenseModel)
        assert vl_engine.status()["vision"] is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
