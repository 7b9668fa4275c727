"""Engine registry and platform dispatch.

Builtin engines are registered on import. Third-party engines are
discovered via the ``lai_runtime.engines`` entry point group.
"""

import importlib.metadata
import logging
import platform
import threading
from typing import Mapping, Type

from ..errors import UnsupportedPlatform
from ..utils.config import Settings
from .base import Engine

logger = logging.getLogger(__name__)

_ENGINES: dict[str, Type[Engine]] = {}

# Preference order when ENGINE is "auto"; unknown names sort after these.
PREFERENCE = ("vision", "text")


def register_engine(name: str, cls: Type[Engine]) -> None:
    """Register an engine class by name."""
    _ENGINES[name] = cls


def list_engines() -> dict[str, Type[Engine]]:
    """Return a copy of the registered engines."""
    return _ENGINES.copy()


def _load_entry_points() -> None:
    """Discover and register third-party engines via entry points."""
    try:
        eps = importlib.metadata.entry_points(group="lai_runtime.engines")
    except Exception:
        return

    for ep in eps:
        if ep.name in _ENGINES:
            continue
        try:
            cls = ep.load()
            register_engine(ep.name, cls)
            logger.debug(f"Loaded engine plugin: {ep.name}")
        except Exception as e:
            logger.warning(f"Failed to load engine '{ep.name}': {e}")


def _register_builtins() -> None:
    from .llama_cpp_engine import LlamaCppTextEngine, LlamaCppVisionEngine

    register_engine("vision", LlamaCppVisionEngine)
    register_engine("text", LlamaCppTextEngine)


class PlatformDispatcher:
    """Resolves the engine variant for this process exactly once.

    Everything above this class is written against the Engine interface and
    never asks which backend is running.
    """

    def __init__(self, settings: Settings, engines: Mapping[str, Type[Engine]] | None = None):
        self.settings = settings
        self._engines = dict(engines) if engines is not None else list_engines()
        self._engine: Engine | None = None
        self._lock = threading.Lock()

    def _candidates(self) -> list[str]:
        forced = (self.settings.ENGINE or "auto").strip().lower()
        if forced != "auto":
            if forced not in self._engines:
                raise UnsupportedPlatform(
                    f"Engine '{forced}' is not registered. Available: {', '.join(sorted(self._engines)) or 'none'}",
                    operation="resolve engine",
                )
            return [forced]
        return sorted(
            self._engines,
            key=lambda n: (PREFERENCE.index(n) if n in PREFERENCE else len(PREFERENCE), n),
        )

    def resolve(self) -> Engine:
        if self._engine is not None:
            return self._engine
        with self._lock:
            if self._engine is not None:
                return self._engine
            for name in self._candidates():
                cls = self._engines[name]
                try:
                    available = cls.is_available(self.settings)
                except Exception as e:
                    logger.warning(f"Availability check for engine '{name}' failed: {e}")
                    available = False
                if not available:
                    logger.debug(f"Engine '{name}' not available on this platform")
                    continue
                try:
                    engine = cls(self.settings)
                except ImportError as e:
                    logger.debug(f"Engine '{name}' could not be constructed: {e}")
                    continue
                logger.info(f"Resolved engine '{name}' ({engine.model_name}) on {self.platform_name}")
                self._engine = engine
                return engine

        raise UnsupportedPlatform(
            f"No inference engine is available on {self.platform_name}",
            operation="resolve engine",
        )

    @property
    def resolved(self) -> Engine | None:
        return self._engine

    @property
    def platform_name(self) -> str:
        return f"{platform.system().lower() or 'unknown'}-{platform.machine().lower() or 'unknown'}"

    @property
    def model_name(self) -> str:
        if self._engine is None:
            return "unresolved"
        return self._engine.model_name


_register_builtins()
_load_entry_points()
