"""Core module for configuration and process-wide infrastructure."""

from abrworker.core.config import settings

__all__ = [
    "settings",
]
