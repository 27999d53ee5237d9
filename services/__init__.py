"""Service layer utilities."""

from .image_backend import (  # noqa: F401
    GeminiImageBackend,
    GenerationResult,
    ImageBackend,
    MockImageBackend,
    build_backend,
)

__all__ = [
    "GeminiImageBackend",
    "GenerationResult",
    "ImageBackend",
    "MockImageBackend",
    "build_backend",
]
