"""
localvl :: Inference Engine

Generation loop and the engine that owns one loaded model.

  GenerationLoop   one request: Idle -> Prefill -> Decode(n) -> Done
  InferenceEngine  device + model + tokenizer + config behind one lock

Concurrent callers serialize on the engine lock: one generation is in
flight per engine, the rest wait. Calls block until the generation ends;
there is no cancellation and no internal timeout.
"""

import threading
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

import torch

from localvl.core.chat_template import IMAGE_PAD, format_vision_prompt
from localvl.core.errors import (
    EngineRuntimeError,
    ForwardError,
    InputError,
    LocalVLError,
    NotInitializedError,
    PromptTooLongError,
)
from localvl.core.logging import RequestLogger, get_logger
from localvl.core.metrics import EngineMetrics
from localvl.core.sampling import GenerationConfig, make_generator, sample_token
from localvl.core.tokenizer import Tokenizer, TokenizerBridge, resolve_eos_token_id
from localvl.models.backends import (
    WeightBackedModel,
    WeightSource,
    load_weight_backed_model,
    resolve_device,
)
from localvl.models.multimodal import PrefillInputs, get_rope_index, splice_vision_embeddings
from localvl.vision.processor import preprocess_image

logger = get_logger("localvl.engine")


class GenerationState(Enum):
    IDLE = "idle"
    PREFILL = "prefill"
    DECODE = "decode"
    DONE = "done"


@dataclass
class GenerationResult:
    """Result of one generation request."""
    request_id: int
    text: str
    token_ids: List[int]
    prompt_tokens: int
    finish_reason: str          # "stop" or "length"
    forward_calls: int
    forward_tokens: int
    elapsed_ms: float


# =========================================================================
# Generation loop
# =========================================================================

class GenerationLoop:
    """
    Drives one request through the model.

    Prefill runs the whole prompt at position_offset 0. Each decode step
    samples from the last-position logits; EOS ends the request without
    being emitted, anything else is appended and fed back as a single
    token at the current offset. Stops after max_new_tokens steps.
    """

    def __init__(
        self,
        model: WeightBackedModel,
        tokenizer: TokenizerBridge,
        config: GenerationConfig,
        eos_token_id: int,
        request_id: int = 0,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.config = config
        self.eos_token_id = eos_token_id
        self.state = GenerationState.IDLE
        self.position_offset = 0
        self.generated: List[int] = []
        self.log = RequestLogger(request_id, logger)

    def run(
        self,
        prompt_ids: List[int],
        max_new_tokens: int,
        prefill: Optional[PrefillInputs] = None,
    ) -> GenerationResult:
        if self.state != GenerationState.IDLE:
            raise EngineRuntimeError(f"generation loop already {self.state.value}")
        check_prompt(prompt_ids, max_new_tokens, self.config)

        generator = make_generator(self.config.seed)
        self.model.reset()

        self.state = GenerationState.PREFILL
        if prefill is not None:
            logits = self._forward(
                prompt_ids,
                inputs_embeds=prefill.inputs_embeds,
                position_ids=prefill.position_ids,
                rope_delta=prefill.rope_delta,
            )
        else:
            logits = self._forward(prompt_ids)
        self.position_offset = len(prompt_ids)
        self.log.debug("prefill done", prompt_tokens=len(prompt_ids))

        self.state = GenerationState.DECODE
        finish_reason = "length"
        for _ in range(max_new_tokens):
            next_id = sample_token(logits[0, -1], self.config, generator)
            if next_id == self.eos_token_id:
                finish_reason = "stop"
                break
            self.generated.append(next_id)
            logits = self._forward([next_id])
            self.position_offset += 1

        self.state = GenerationState.DONE
        text = self.tokenizer.decode(self.generated) if self.generated else ""
        stats = self.model.stats
        return GenerationResult(
            request_id=self.log.request_id,
            text=text,
            token_ids=list(self.generated),
            prompt_tokens=len(prompt_ids),
            finish_reason=finish_reason,
            forward_calls=stats.get("forward_calls", 0),
            forward_tokens=stats.get("forward_tokens", 0),
            elapsed_ms=self.log.elapsed_ms(),
        )

    def _forward(self, token_ids: List[int], **kwargs) -> torch.Tensor:
        ids = torch.tensor([token_ids], dtype=torch.long)
        try:
            return self.model.forward(ids, self.position_offset, **kwargs)
        except LocalVLError:
            raise
        except (RuntimeError, ValueError, IndexError) as e:
            raise ForwardError(
                f"forward failed during {self.state.value} at position {self.position_offset}: {e}"
            ) from e


def check_prompt(prompt_ids: List[int], max_new_tokens: int, config: GenerationConfig):
    """Input validation that must pass before the model is touched."""
    if max_new_tokens < 0:
        raise InputError(f"max_new_tokens must be >= 0, got {max_new_tokens}")
    if not prompt_ids:
        raise InputError("prompt encodes to zero tokens")
    if len(prompt_ids) > config.max_seq_len:
        raise PromptTooLongError(len(prompt_ids), config.max_seq_len)


# =========================================================================
# Engine
# =========================================================================

@dataclass
class _Loaded:
    model: WeightBackedModel
    tokenizer: TokenizerBridge
    config: GenerationConfig
    eos_token_id: int
    source: WeightSource = field(default=None)


class InferenceEngine:
    """
    Owns exactly one model at a time.

    Lifecycle: load() -> many generate() calls -> unload(). A failed load
    leaves the previous model (or the unloaded state) in place.
    """

    def __init__(
        self,
        device: Union[str, torch.device] = "auto",
        metrics: Optional[EngineMetrics] = None,
    ):
        self.device = resolve_device(device) if isinstance(device, str) else device
        self.metrics = metrics or EngineMetrics()
        self._lock = threading.Lock()
        self._loaded: Optional[_Loaded] = None
        self._request_counter = 0

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    def load(
        self,
        weights: Union[WeightSource, str],
        tokenizer: Union[TokenizerBridge, str],
        config: Optional[GenerationConfig] = None,
    ) -> "InferenceEngine":
        """Load synchronously; swap in only after everything succeeded."""
        if isinstance(weights, str):
            weights = WeightSource.of(weights)
        if isinstance(tokenizer, str):
            tokenizer = Tokenizer.from_file(tokenizer)
        config = config or GenerationConfig()

        start = time.perf_counter()
        model = load_weight_backed_model(weights, self.device)
        eos_token_id = resolve_eos_token_id(tokenizer)
        loaded = _Loaded(model, tokenizer, config, eos_token_id, weights)

        with self._lock:
            self._loaded = loaded
        self.metrics.on_model_loaded(
            model.backend, model.config.text.architecture, ",".join(weights.paths)
        )
        logger.info(
            f"Engine ready: backend={model.backend}, device={self.device}, "
            f"eos={eos_token_id}, load_ms={(time.perf_counter() - start) * 1000:.0f}"
        )
        return self

    def attach(self, model: WeightBackedModel, tokenizer: TokenizerBridge,
               config: Optional[GenerationConfig] = None) -> "InferenceEngine":
        """Install an already-built model."""
        loaded = _Loaded(model, tokenizer, config or GenerationConfig(), resolve_eos_token_id(tokenizer))
        with self._lock:
            self._loaded = loaded
        self.metrics.model_loaded.set(1)
        return self

    def unload(self):
        with self._lock:
            self._loaded = None
        self.metrics.on_model_unloaded()
        logger.info("Engine unloaded")

    # is_loaded() and status() read single references without the lock, so
    # they answer while a generation holds it.

    def is_loaded(self) -> bool:
        return self._loaded is not None

    def status(self) -> dict:
        loaded = self._loaded
        requests = self._request_counter
        if loaded is None:
            return {"loaded": False, "device": str(self.device), "requests_served": requests}
        cfg = loaded.config
        return {
            "loaded": True,
            "device": str(self.device),
            "backend": loaded.model.backend,
            "architecture": loaded.model.config.text.architecture,
            "vision": loaded.model.vision is not None,
            "eos_token_id": loaded.eos_token_id,
            "generation": {
                "temperature": cfg.temperature,
                "top_p": cfg.top_p,
                "top_k": cfg.top_k,
                "max_seq_len": cfg.max_seq_len,
            },
            "requests_served": requests,
        }

    # ---------------------------------------------------------------------
    # Generation
    # ---------------------------------------------------------------------

    def generate(self, prompt: str, max_new_tokens: int = 256) -> str:
        return self.generate_result(prompt, max_new_tokens).text

    def generate_multimodal(self, image: Any, prompt: str, max_new_tokens: int = 256) -> str:
        return self.generate_multimodal_result(image, prompt, max_new_tokens).text

    def generate_result(self, prompt: str, max_new_tokens: int = 256) -> GenerationResult:
        with self._lock:
            loaded = self._require_loaded()
            request_id = self._next_request_id()
            start = self.metrics.on_request_start()
            try:
                prompt_ids = loaded.tokenizer.encode(prompt)
                check_prompt(prompt_ids, max_new_tokens, loaded.config)
                loop = GenerationLoop(
                    loaded.model, loaded.tokenizer, loaded.config, loaded.eos_token_id, request_id,
                )
                result = loop.run(prompt_ids, max_new_tokens)
            except LocalVLError as e:
                self._record_failure(request_id, e)
                raise
        return self._finish(result, start)

    def generate_multimodal_result(
        self, image: Any, prompt: str, max_new_tokens: int = 256
    ) -> GenerationResult:
        with self._lock:
            loaded = self._require_loaded()
            request_id = self._next_request_id()
            start = self.metrics.on_request_start()
            try:
                prompt_ids, prefill = self._prepare_multimodal(loaded, image, prompt, max_new_tokens)
                loop = GenerationLoop(
                    loaded.model, loaded.tokenizer, loaded.config, loaded.eos_token_id, request_id,
                )
                result = loop.run(prompt_ids, max_new_tokens, prefill=prefill)
            except LocalVLError as e:
                self._record_failure(request_id, e)
                raise
        return self._finish(result, start)

    def check_forward(self, seq_len: int = 8) -> List[int]:
        """Smoke test: one prefill over `seq_len` dummy tokens, returns logits shape."""
        with self._lock:
            loaded = self._require_loaded()
            if seq_len <= 0:
                raise InputError(f"seq_len must be > 0, got {seq_len}")
            loaded.model.reset()
            ids = torch.arange(seq_len, dtype=torch.long).remainder(
                loaded.model.config.text.vocab_size
            ).unsqueeze(0)
            try:
                logits = loaded.model.forward(ids, 0)
            except LocalVLError:
                raise
            except (RuntimeError, ValueError, IndexError) as e:
                raise ForwardError(f"forward check failed: {e}") from e
            finally:
                loaded.model.reset()
        return list(logits.shape)

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    def _require_loaded(self) -> _Loaded:
        if self._loaded is None:
            raise NotInitializedError()
        return self._loaded

    def _next_request_id(self) -> int:
        self._request_counter += 1
        return self._request_counter

    def _prepare_multimodal(self, loaded: _Loaded, image, prompt: str, max_new_tokens: int):
        model = loaded.model
        if model.vision is None:
            raise InputError(f"the loaded {model.backend} model has no vision tower")

        pixel_values, grid = preprocess_image(image, model.config.vision)

        image_token_id = model.config.image_token_id
        if image_token_id is None:
            image_token_id = loaded.tokenizer.token_to_id(IMAGE_PAD)
        if image_token_id is None:
            raise InputError(f"tokenizer has no '{IMAGE_PAD}' token and config has no image_token_id")

        prompt_ids = loaded.tokenizer.encode(format_vision_prompt(prompt, grid.num_tokens))
        check_prompt(prompt_ids, max_new_tokens, loaded.config)

        try:
            vision_embeds = model.encode_image(pixel_values, grid)
            text_embeds = model.embed(torch.tensor([prompt_ids], dtype=torch.long))
        except LocalVLError:
            raise
        except (RuntimeError, ValueError, IndexError) as e:
            raise ForwardError(f"vision forward failed: {e}") from e

        inputs_embeds = splice_vision_embeddings(text_embeds, prompt_ids, image_token_id, vision_embeds)
        position_ids, rope_delta = get_rope_index(prompt_ids, image_token_id, grid)
        logger.debug(f"Image grid {tuple(grid)} -> {grid.num_tokens} vision tokens, rope_delta={rope_delta}")
        return prompt_ids, PrefillInputs(inputs_embeds, position_ids, rope_delta)

    def _record_failure(self, request_id: int, error: LocalVLError):
        self.metrics.on_request_failed(error)
        logger.warning(
            f"Request failed: {type(error).__name__}: {error}",
            extra={"request_id": request_id},
        )

    def _finish(self, result: GenerationResult, start: float) -> GenerationResult:
        self.metrics.on_request_end(start, result.prompt_tokens, len(result.token_ids))
        logger.info(
            f"Generated {len(result.token_ids)} tokens in {result.elapsed_ms:.0f}ms "
            f"(prompt={result.prompt_tokens}, finish={result.finish_reason})",
            extra={"request_id": result.request_id},
        )
        return result


def init_engine(
    weights: Union[WeightSource, str],
    tokenizer: Union[TokenizerBridge, str],
    config: Optional[GenerationConfig] = None,
    device: Union[str, torch.device] = "auto",
) -> InferenceEngine:
    """Build an engine and load a model into it."""
    return InferenceEngine(device=device).load(weights, tokenizer, config)
