"""
localvl :: Errors

Exception taxonomy for the engine.

  LoadError           weight loading failed; engine state untouched
    WeightFileUnreadableError   file missing or unreadable
    UnrecognizedFormatError     file contents cannot be parsed
    ArchitectureMismatchError   tensors do not fit the configured shapes
  InputError          rejected before any forward computation
    PromptTooLongError
    TokenizerError
    ImageError
  EngineRuntimeError  the current request failed, loaded model intact
    NotInitializedError
    ForwardError
"""


class LocalVLError(Exception):
    """Base class for all localvl errors."""


class LoadError(LocalVLError):
    """Loading weights failed."""

    kind = "load"

    def __init__(self, message: str, path: str = ""):
        self.path = path
        if path:
            message = f"{message} ({path})"
        super().__init__(message)


class WeightFileUnreadableError(LoadError):
    kind = "file_unreadable"


class UnrecognizedFormatError(LoadError):
    kind = "format_unrecognized"


class ArchitectureMismatchError(LoadError):
    kind = "architecture_mismatch"


class InputError(LocalVLError, ValueError):
    """Request input rejected before any model computation."""


class PromptTooLongError(InputError):

    def __init__(self, num_tokens: int, max_seq_len: int):
        self.num_tokens = num_tokens
        self.max_seq_len = max_seq_len
        super().__init__(
            f"prompt has {num_tokens} tokens, exceeds max_seq_len={max_seq_len}"
        )


class TokenizerError(InputError):
    pass


class ImageError(InputError):
    pass


class EngineRuntimeError(LocalVLError, RuntimeError):
    """A generation request failed after it started."""


class NotInitializedError(EngineRuntimeError):

    def __init__(self, message: str = "model not initialized"):
        super().__init__(message)


class ForwardError(EngineRuntimeError):
    pass
