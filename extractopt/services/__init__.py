"""extractopt services - resilient backend access and field optimization."""

from extractopt.services.ai_client import ResilientAIClient
from extractopt.services.error_classifier import ErrorClassifier
from extractopt.services.generation_backend import (
    BackendFactory,
    BoxAIBackend,
    EnvTokenProvider,
    GenerationBackend,
    StaticTokenProvider,
    TokenProvider,
)
from extractopt.services.retry_handler import RetryExhausted, RetryHandler

__all__ = [
    "BackendFactory",
    "BoxAIBackend",
    "EnvTokenProvider",
    "ErrorClassifier",
    "GenerationBackend",
    "ResilientAIClient",
    "RetryExhausted",
    "RetryHandler",
    "StaticTokenProvider",
    "TokenProvider",
]
