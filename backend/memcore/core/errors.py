from __future__ import annotations


class MemoryEngineError(RuntimeError):
    """Base error for the memory engine."""

    default_code = "MEMORY_ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.retryable = retryable


class InputError(MemoryEngineError):
    """Raised for malformed candidates or feedback; nothing is persisted."""

    default_code = "INPUT_INVALID"


class ModelUnavailableError(MemoryEngineError):
    """Raised by embedding providers; recovered with the hash fallback."""

    default_code = "MODEL_UNAVAILABLE"


class StoreError(MemoryEngineError):
    """Raised when the memory store fails. Safe to retry."""

    default_code = "STORE_FAILED"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message, code=code, retryable=True)
