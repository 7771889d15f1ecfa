"""
localvl :: CLI

Usage:
    localvl generate <weights...> --prompt "..." [--image cat.png] [--max-tokens 128]
    localvl serve [<weights...>] [--port 8000] [--host 127.0.0.1]
    localvl inspect <model.gguf>
    localvl quantize <weights...> --output model.gguf [--type q8_0]
    localvl check-forward <weights...> [--seq-len 8]
    localvl list [--models-dir DIR] [--tokenizers] [--json]

Dense safetensors need a config.json: pass --config, or keep it next to
the weights. The tokenizer is looked up the same way (--tokenizer, else
tokenizer.json beside the weights).

Models are discovered under $LOCALVL_MODELS_DIR, else ./models, else
~/.localvl/models.

The default log level comes from LOCALVL_LOG_LEVEL (trace, debug, info,
warn, error), overridden by --log-level.
"""

import argparse
import json
import os
import sys
from dataclasses import asdict

ENV_LOG_LEVEL = "LOCALVL_LOG_LEVEL"


def _weights_dir(weights) -> str:
    if not weights:
        return ""
    first = weights[0]
    return first if os.path.isdir(first) else os.path.dirname(os.path.abspath(first))


def _resolve_config(args):
    from localvl.models.config import ModelConfig

    path = args.config
    if path is None:
        candidate = os.path.join(_weights_dir(args.weights), "config.json")
        if os.path.isfile(candidate):
            path = candidate
    if path is None:
        return None
    config = ModelConfig.from_json(path)
    if getattr(args, "dtype", None):
        config.torch_dtype = args.dtype
    return config


def _resolve_tokenizer(args) -> str:
    from localvl.core.tokenizer import find_tokenizer_file

    if args.tokenizer:
        return args.tokenizer
    path = find_tokenizer_file(_weights_dir(args.weights))
    if path is None:
        print("error: no tokenizer.json found next to the weights, pass --tokenizer", file=sys.stderr)
        sys.exit(2)
    return path


def _generation_config(args):
    from localvl.core.sampling import GenerationConfig

    return GenerationConfig(
        temperature=args.temperature,
        top_p=args.top_p,
        top_k=args.top_k,
        max_seq_len=args.max_seq_len,
        seed=args.seed,
    )


def _load_engine(args):
    from localvl.engine.engine import InferenceEngine
    from localvl.models.backends import WeightSource

    source = WeightSource.of(args.weights, _resolve_config(args))
    engine = InferenceEngine(device=args.device)
    engine.load(source, _resolve_tokenizer(args), _generation_config(args))
    return engine


def cmd_generate(args):
    """Generate text for one prompt, optionally conditioned on an image."""
    engine = _load_engine(args)
    if args.image:
        result = engine.generate_multimodal_result(args.image, args.prompt, args.max_tokens)
    else:
        result = engine.generate_result(args.prompt, args.max_tokens)
    print(result.text)
    if args.stats:
        print(
            f"\n[{len(result.token_ids)} tokens, prompt={result.prompt_tokens}, "
            f"finish={result.finish_reason}, forward_calls={result.forward_calls}, "
            f"{result.elapsed_ms:.0f} ms]",
            file=sys.stderr,
        )


def cmd_serve(args):
    """Start the HTTP server (with or without a model loaded)."""
    from localvl.api.server import InferenceServer
    from localvl.core.chat_template import ChatTemplate, load_chat_template
    from localvl.engine.engine import InferenceEngine

    if args.weights:
        engine = _load_engine(args)
    else:
        engine = InferenceEngine(device=args.device)

    if args.chat_template:
        chat_template = ChatTemplate.from_file(args.chat_template)
    else:
        chat_template = load_chat_template(_weights_dir(args.weights))

    model_name = os.path.basename(os.path.normpath(args.weights[0])) if args.weights else "localvl"
    InferenceServer(engine, chat_template, args.host, args.port, model_name).run()


def cmd_inspect(args):
    """Print GGUF metadata and tensor directory."""
    from localvl.core.gguf import GGUFFile

    gguf = GGUFFile(args.path)
    print(f"File:         {args.path}")
    print(f"Architecture: {gguf.architecture}")
    print(f"Alignment:    {gguf.alignment}")
    print(f"Tensors:      {len(gguf.tensors)}")
    print("\nMetadata:")
    for key, value in gguf.metadata.items():
        if isinstance(value, list) and len(value) > 8:
            value = f"[{len(value)} items]"
        print(f"  {key:<45} {value}")
    if args.tensors:
        print(f"\n{'Name':<40} {'Type':>6} {'Shape'}")
        print("-" * 70)
        for name, shape, type_name in gguf.describe():
            print(f"{name:<40} {type_name:>6} {list(shape)}")


def cmd_quantize(args):
    """Convert dense safetensors + config into a packed GGUF file."""
    from localvl.core.loader import resolve_weight_files
    from localvl.core.quantization import GGMLType
    from localvl.models.backends import DenseModel
    from localvl.models.export import export_gguf

    config = _resolve_config(args)
    if config is None:
        print("error: dense weights need --config (or config.json next to them)", file=sys.stderr)
        sys.exit(2)
    config.torch_dtype = "float32"
    config.vision = None

    ggml_type = GGMLType.parse(args.type)
    model = DenseModel.from_safetensors(resolve_weight_files(args.weights), config, "cpu")
    export_gguf(model.runner.decoder, args.output, ggml_type)
    print(f"Wrote {args.output} ({ggml_type.name}, {os.path.getsize(args.output) / 1e6:.1f} MB)")


def cmd_check_forward(args):
    """Load a model and run one prefill over dummy tokens."""
    engine = _load_engine(args)
    shape = engine.check_forward(args.seq_len)
    print(f"forward OK: logits shape {shape}")


def cmd_list(args):
    """List model files (and tokenizers) under the models directory."""
    from localvl.core.loader import default_models_dir, discover_models, discover_tokenizers

    root = args.models_dir or default_models_dir()
    models = discover_models(root)
    tokenizers = discover_tokenizers(root) if args.tokenizers else []
    if args.json:
        print(json.dumps({
            "models_dir": root,
            "models": [asdict(m) for m in models],
            "tokenizers": [asdict(t) for t in tokenizers],
        }, indent=2))
        return

    print(f"Models directory: {root}")
    if not models:
        print("  (no .gguf or .safetensors files)")
    for m in models:
        tok = m.tokenizer_path or "-"
        print(f"  {m.name:<32} {m.model_type:<12} {m.size / 1e6:>9.1f} MB  {m.modified_time}  tokenizer: {tok}")
        print(f"      {m.path}")
    if args.tokenizers:
        print("\nTokenizers:")
        for t in tokenizers:
            print(f"  {t.name:<32} {t.modified_time}  {t.path}")


def _add_model_args(p, weights_required: bool = True):
    if weights_required:
        p.add_argument("weights", nargs="+", help="GGUF file, safetensors file(s) or model directory")
    else:
        p.add_argument("weights", nargs="*", help="GGUF file, safetensors file(s) or model directory")
    p.add_argument("--config", default=None, help="config.json for dense weights")
    p.add_argument("--tokenizer", default=None, help="Path to tokenizer.json")
    p.add_argument("--device", default="auto", help="auto, cpu, cuda, cuda:N, mps")
    p.add_argument("--dtype", default=None, choices=["float32", "float16", "bfloat16"],
                   help="Override dense weight dtype")


def _add_sampling_args(p):
    p.add_argument("--temperature", type=float, default=0.8)
    p.add_argument("--top-p", type=float, default=0.9)
    p.add_argument("--top-k", type=int, default=40)
    p.add_argument("--max-seq-len", type=int, default=2048, help="Maximum prompt length in tokens")
    p.add_argument("--seed", type=int, default=None)


def main(argv=None):
    from localvl.core.errors import LocalVLError
    from localvl.core.logging import setup_logging

    parser = argparse.ArgumentParser(
        prog="localvl",
        description="Local text and vision-language model inference",
    )
    parser.add_argument("--log-level", default=os.environ.get(ENV_LOG_LEVEL, "info"),
                        help=f"trace, debug, info, warn, error (default: ${ENV_LOG_LEVEL} or info)")
    parser.add_argument("--json-logs", action="store_true", help="JSON log lines on stderr")
    parser.add_argument("--log-file", default=None)
    sub = parser.add_subparsers(dest="command")

    # generate
    p_gen = sub.add_parser("generate", help="Generate text")
    _add_model_args(p_gen)
    _add_sampling_args(p_gen)
    p_gen.add_argument("--prompt", required=True)
    p_gen.add_argument("--image", default=None, help="Image file for vision-language models")
    p_gen.add_argument("--max-tokens", type=int, default=256)
    p_gen.add_argument("--stats", action="store_true", help="Print token counts and timing")
    p_gen.set_defaults(func=cmd_generate)

    # serve
    p_serve = sub.add_parser("serve", help="Start HTTP server")
    _add_model_args(p_serve, weights_required=False)
    _add_sampling_args(p_serve)
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--chat-template", default=None, help="Path to a Jinja2 chat template")
    p_serve.set_defaults(func=cmd_serve)

    # inspect
    p_inspect = sub.add_parser("inspect", help="Show GGUF metadata")
    p_inspect.add_argument("path")
    p_inspect.add_argument("--tensors", action="store_true", help="Also list tensors")
    p_inspect.set_defaults(func=cmd_inspect)

    # quantize
    p_quant = sub.add_parser("quantize", help="Convert safetensors to GGUF")
    p_quant.add_argument("weights", nargs="+")
    p_quant.add_argument("--config", default=None)
    p_quant.add_argument("--output", "-o", required=True)
    p_quant.add_argument("--type", default="q8_0", choices=["f32", "f16", "q8_0", "q4_0"])
    p_quant.set_defaults(func=cmd_quantize)

    # check-forward
    p_check = sub.add_parser("check-forward", help="Smoke-test one forward pass")
    _add_model_args(p_check)
    p_check.add_argument("--seq-len", type=int, default=8)
    p_check.set_defaults(func=cmd_check_forward, temperature=0.8, top_p=0.9, top_k=40,
                         max_seq_len=2048, seed=None)

    # list
    p_list = sub.add_parser("list", help="List local models and tokenizers")
    p_list.add_argument("--models-dir", default=None, help="Directory to scan (default: $LOCALVL_MODELS_DIR)")
    p_list.add_argument("--tokenizers", action="store_true", help="Also list tokenizer.json files")
    p_list.add_argument("--json", action="store_true", help="Machine-readable output")
    p_list.set_defaults(func=cmd_list)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        setup_logging(args.log_level, json_output=args.json_logs, log_file=args.log_file)
    except ValueError as e:
        parser.error(str(e))

    try:
        args.func(args)
    except LocalVLError as e:
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
