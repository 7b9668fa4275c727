"""Engine capability and its concrete backends."""

from .base import Engine, TokenCallback
from .registry import PlatformDispatcher, list_engines, register_engine

__all__ = [
    "Engine",
    "PlatformDispatcher",
    "TokenCallback",
    "list_engines",
    "register_engine",
]
