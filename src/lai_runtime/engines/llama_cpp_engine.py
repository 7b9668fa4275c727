import base64
import contextlib
import gc
import logging
import mimetypes
import os
import threading
from abc import abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List

from ..errors import EngineError
from ..types import CancelStyle
from ..utils.config import Settings, is_llama_cpp_available
from .base import Engine, TokenCallback

try:
    from llama_cpp import Llama
    _llama_cpp_available = True
except ImportError:
    Llama = None
    _llama_cpp_available = False

logger = logging.getLogger(__name__)

# How long a hard stop waits for the stream loop to observe the abort flag.
STOP_ACK_TIMEOUT_SECONDS = 30.0


class _LlamaCppEngine(Engine):
    """Shared load/stream/unload plumbing for llama-cpp-python backends."""

    def __init__(self, settings: Settings):
        if not _llama_cpp_available:
            raise ImportError(
                "`llama-cpp-python` not found. Install it following instructions: "
                "https://github.com/abetlen/llama-cpp-python#installation"
            )
        super().__init__(settings)
        self.llm_model = None
        self.model_path: str | None = None
        self._generating = threading.Event()

    @classmethod
    def is_available(cls, settings: Settings) -> bool:
        return is_llama_cpp_available()

    def _chat_handler(self) -> Any:
        return None

    def load_model(self, path: str | None) -> str:
        if self.llm_model is not None:
            return "Model already loaded"
        if not path:
            raise EngineError("A model path is required")

        model_file = Path(path)
        if not model_file.is_file():
            raise EngineError(f"Model file not found at: {path}")
        if model_file.stat().st_size == 0:
            raise EngineError(f"Model file is empty: {path}")

        model_load_params = {
            "model_path": str(model_file),
            "n_gpu_layers": self.settings.N_GPU_LAYERS,
            "n_ctx": self.settings.N_CTX,
            "chat_handler": self._chat_handler(),
            "verbose": False,  # Disable llama-cpp's library-level verbose logging
        }
        logger.debug(
            f"llama.cpp load parameters (excluding path): "
            f"{ {k: v for k, v in model_load_params.items() if k not in ('model_path', 'chat_handler')} }"
        )

        try:
            with open(os.devnull, 'w') as fnull, contextlib.redirect_stderr(fnull):
                self.llm_model = Llama(**model_load_params)
        except Exception as e:
            self.llm_model = None
            raise EngineError(str(e) or type(e).__name__) from e

        self.model_path = str(model_file)
        logger.info(f"{self.name} engine loaded {self.model_path}")
        return "Model loaded successfully"

    def _generation_params(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "messages": messages,
            "max_tokens": self.settings.MAX_TOKENS,
            "temperature": self.settings.TEMPERATURE,
            "top_k": self.settings.TOP_K,
            "stream": True,
        }

    def _open_stream(self, messages: List[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        if self.llm_model is None:
            raise EngineError("Model not loaded")
        try:
            return self.llm_model.create_chat_completion(**self._generation_params(messages))
        except Exception as e:
            raise EngineError(str(e) or type(e).__name__) from e

    @staticmethod
    def _chunk_content(chunk: Dict[str, Any]) -> str:
        delta = chunk.get('choices', [{}])[0].get('delta', {})
        return delta.get('content') or ""

    def generate(self, prompt: str, on_token: TokenCallback) -> str:
        return self._run([{"role": "user", "content": prompt}], on_token)

    @abstractmethod
    def _run(self, messages: List[Dict[str, Any]], on_token: TokenCallback) -> str:
        raise NotImplementedError

    def unload_model(self) -> str:
        if self.llm_model is None:
            return "Model not loaded"

        logger.info(f"Unloading GGUF model: {self.model_path}")
        close = getattr(self.llm_model, "close", None)
        try:
            if callable(close):
                close()
        finally:
            self.llm_model = None
            self.model_path = None
            gc.collect()
        return "Model unloaded successfully"


class LlamaCppVisionEngine(_LlamaCppEngine):
    """Vision-capable engine: GGUF model plus a CLIP projector.

    Stop is a hard cancel. The stream loop checks an abort flag between
    chunks, closes the native stream and acknowledges; ``stop_generation``
    waits for that acknowledgement.
    """

    name = "vision"
    model_name = "llama.cpp (vision)"
    SUPPORTS_VISION = True
    CANCEL_STYLE = CancelStyle.HARD

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self._abort = threading.Event()
        self._aborted = threading.Event()

    @classmethod
    def is_available(cls, settings: Settings) -> bool:
        if not is_llama_cpp_available() or not settings.VISION_PROJECTOR_PATH:
            return False
        return Path(settings.VISION_PROJECTOR_PATH).expanduser().is_file()

    def _chat_handler(self) -> Any:
        from llama_cpp.llama_chat_format import Llava15ChatHandler

        clip_path = str(Path(self.settings.VISION_PROJECTOR_PATH).expanduser())
        return Llava15ChatHandler(clip_model_path=clip_path, verbose=False)

    def generate_with_image(self, prompt: str, image_path: str, on_token: TokenCallback) -> str:
        image = Path(image_path)
        if not image.is_file():
            raise EngineError(f"Image file does not exist at {image_path}")
        mime = mimetypes.guess_type(image.name)[0] or "image/png"
        encoded = base64.b64encode(image.read_bytes()).decode("ascii")
        messages = [{
            "role": "user",
            "content": [
                {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}},
                {"type": "text", "text": prompt},
            ],
        }]
        return self._run(messages, on_token)

    def _run(self, messages: List[Dict[str, Any]], on_token: TokenCallback) -> str:
        self._abort.clear()
        self._aborted.clear()
        self._generating.set()
        stream = None
        try:
            stream = self._open_stream(messages)
            for chunk in stream:
                if self._abort.is_set():
                    logger.debug("Vision generation aborted between chunks")
                    return "Generation stopped"
                content = self._chunk_content(chunk)
                if content:
                    on_token(content, False)
            on_token("", True)
            return "Generation completed"
        except EngineError:
            raise
        except Exception as e:
            raise EngineError(str(e) or type(e).__name__) from e
        finally:
            close = getattr(stream, "close", None) if stream is not None else None
            if callable(close):
                close()
            self._generating.clear()
            self._aborted.set()

    def stop_generation(self) -> str:
        if not self._generating.is_set():
            return "No generation in progress"
        self._abort.set()
        if not self._aborted.wait(STOP_ACK_TIMEOUT_SECONDS):
            raise EngineError("Generation did not acknowledge the stop request")
        return "Generation stopped"

    def unload_model(self) -> str:
        if self._generating.is_set():
            self.stop_generation()
        return super().unload_model()


class LlamaCppTextEngine(_LlamaCppEngine):
    """Text-only engine.

    It has no abort primitive: ``stop_generation`` acknowledges immediately
    and the running call streams to completion. Callers discard the rest.
    """

    name = "text"
    model_name = "llama.cpp (text)"
    SUPPORTS_VISION = False
    CANCEL_STYLE = CancelStyle.SOFT

    def _run(self, messages: List[Dict[str, Any]], on_token: TokenCallback) -> str:
        self._generating.set()
        try:
            for chunk in self._open_stream(messages):
                content = self._chunk_content(chunk)
                if content:
                    on_token(content, False)
            on_token("", True)
            return "Generation completed"
        except EngineError:
            raise
        except Exception as e:
            raise EngineError(str(e) or type(e).__name__) from e
        finally:
            self._generating.clear()

    def stop_generation(self) -> str:
        return "Generation stopped"
