"""Centralized exception hierarchy for the engine backends."""
from __future__ import annotations
from typing import Iterable, List, Optional


class EngineError(Exception):
    """Base class for all engine related errors."""


class ConfigError(EngineError):
    pass


class InitError(EngineError):
    """Backend failed to come up.

    ``missing_dependencies`` is non-empty only when the bootstrap named the
    components it could not find.
    """

    def __init__(self, message: str = "", missing_dependencies: Optional[Iterable[str]] = None):
        self.missing_dependencies: List[str] = [str(m) for m in (missing_dependencies or [])]
        if not message:
            message = (
                "Missing engine dependencies: " + ", ".join(self.missing_dependencies)
                if self.missing_dependencies
                else "Engine initialization failed"
            )
        super().__init__(message)


class EmbeddedInitError(InitError):
    pass


class TransportError(EngineError):  # process exit / broken pipe
    pass


class WorkerNotReadyError(TransportError):
    pass


class ProtocolError(EngineError):  # malformed line; logged, never raised to callers
    pass


class EvaluationError(EngineError):
    pass


class CacheWriteError(EngineError):
    pass


class BackendUnavailableError(EngineError):
    pass


__all__ = [
    "EngineError",
    "ConfigError",
    "InitError",
    "EmbeddedInitError",
    "TransportError",
    "WorkerNotReadyError",
    "ProtocolError",
    "EvaluationError",
    "CacheWriteError",
    "BackendUnavailableError",
]
