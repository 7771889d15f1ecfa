"""
localvl :: GGUF Export

Writes a dense text decoder as a single packed GGUF file that the
quantized backend can load. Linear weight matrices take the requested
storage type; norms, biases and any matrix whose rows do not divide into
blocks stay F32. Vision weights are not exported.
"""

from typing import Dict, Tuple

import torch

from localvl.core.gguf import write_gguf
from localvl.core.logging import get_logger
from localvl.core.quantization import QK, GGMLType
from localvl.models.naming import decoder_to_gguf_name, permute_qk
from localvl.models.transformer import TextDecoder

logger = get_logger("localvl.export")


def _storage_type(tensor: torch.Tensor, ggml_type: GGMLType) -> GGMLType:
    if tensor.dim() != 2:
        return GGMLType.F32
    if ggml_type in (GGMLType.Q8_0, GGMLType.Q4_0) and tensor.shape[-1] % QK:
        return GGMLType.F32
    return ggml_type


def decoder_tensors(
    decoder: TextDecoder,
    ggml_type: GGMLType,
) -> Dict[str, Tuple[torch.Tensor, GGMLType]]:
    """GGUF name -> (tensor, storage type) for every decoder weight."""
    config = decoder.config
    state = decoder.state_dict()
    tied = config.tie_word_embeddings and torch.equal(
        state["lm_head.weight"], state["embed_tokens.weight"]
    )

    tensors = {}
    for name, tensor in state.items():
        if tied and name == "lm_head.weight":
            continue
        gguf_name = decoder_to_gguf_name(name)
        if gguf_name is None:
            logger.warning(f"No GGUF name for '{name}', skipped")
            continue
        tensor = tensor.detach().to("cpu", torch.float32)
        if config.architecture == "llama" and name.endswith(("q_proj.weight", "k_proj.weight")):
            n_head = config.num_attention_heads if "q_proj" in name else config.num_key_value_heads
            tensor = permute_qk(tensor, n_head)
        tensors[gguf_name] = (tensor, _storage_type(tensor, ggml_type))
    return tensors


def export_gguf(decoder: TextDecoder, path: str, ggml_type: GGMLType = GGMLType.Q8_0) -> str:
    """Write `decoder` to `path`. Returns the path."""
    ggml_type = GGMLType(ggml_type)
    tensors = decoder_tensors(decoder, ggml_type)
    metadata = decoder.config.to_gguf_metadata()
    metadata["general.name"] = "localvl-export"
    metadata["general.file_type"] = int(ggml_type)
    write_gguf(path, tensors, metadata)

    packed = sum(1 for _, t in tensors.values() if t == ggml_type)
    logger.info(
        f"Exported {len(tensors)} tensors to {path} "
        f"({packed} as {ggml_type.name}, {len(tensors) - packed} as F32)"
    )
    return path
