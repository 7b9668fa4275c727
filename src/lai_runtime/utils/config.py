import importlib.util
import logging
import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..shared.token_filter import DEFAULT_CONTROL_TOKENS

DEFAULT_MODEL_URL = (
    "https://huggingface.co/ggml-org/gemma-3-4b-it-GGUF/resolve/main/"
    "gemma-3-4b-it-Q4_K_M.gguf?download=true"
)
DEFAULT_MODEL_FILE_NAME = "gemma-3-4b-it-q4_k_m.gguf"

logger = logging.getLogger(__name__)


def is_llama_cpp_available() -> bool:
    return importlib.util.find_spec("llama_cpp") is not None


def get_default_config_dir() -> Path:
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(xdg_config_home) / "lai"


def get_dotenv_path() -> Path:
    env_override = os.environ.get("LAI_ENV_FILE")
    if env_override:
        return Path(env_override).expanduser().resolve()

    cwd_env = Path.cwd() / ".env"
    if cwd_env.is_file():
        return cwd_env

    return get_default_config_dir() / ".env"


DOTENV_PATH = get_dotenv_path()


class Settings(BaseSettings):
    # --- Model Acquisition --- #
    MODELS_DIR: str = Field(default=os.path.expanduser("~/.cache/lai/.laiModels"), description="Directory holding the downloaded model artifact")
    MODEL_FILE_NAME: str = Field(default=DEFAULT_MODEL_FILE_NAME, description="File name of the model artifact inside MODELS_DIR")
    MODEL_URL: str = Field(default=DEFAULT_MODEL_URL, description="Remote source the artifact is fetched from")
    MODEL_AUTH_TOKEN: str = Field(default="", description="Bearer token sent with the download request (Set via LAI_MODEL_AUTH_TOKEN)")
    DOWNLOAD_CHUNK_SIZE: int = Field(default=1024 * 1024, description="Bytes read from the response body per progress tick")

    # --- Engine Selection --- #
    ENGINE: str = Field(default="auto", description="'auto' to pick the best available engine, or a registered engine name")
    VISION_PROJECTOR_PATH: Optional[str] = Field(default=None, description="CLIP/mmproj GGUF file enabling the vision engine")

    # --- Generation --- #
    MAX_TOKENS: int = Field(default=512, description="Maximum tokens generated per request")
    TEMPERATURE: float = Field(default=0.8)
    TOP_K: int = Field(default=40)
    N_CTX: int = Field(default=4096, description="llama.cpp context window")
    N_GPU_LAYERS: int = Field(default=-1, description="llama.cpp layers to offload (-1 = all)")
    GENERATION_TIMEOUT_SECONDS: float = Field(default=300.0, description="Upper bound on waiting for a native generation call to finish")
    FILTER_TOKENS: List[str] = Field(default_factory=lambda: list(DEFAULT_CONTROL_TOKENS), description="Control tokens stripped from generated text")

    # --- Runtime flags (set by the CLI) --- #
    VERBOSE: bool = Field(default=False, exclude=True)
    DEBUG: bool = Field(default=False, exclude=True)

    model_config = SettingsConfigDict(
        env_prefix="LAI_",
        env_file=DOTENV_PATH,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra='ignore'
    )

    @property
    def models_dir(self) -> Path:
        return Path(self.MODELS_DIR).expanduser()

    @property
    def model_path(self) -> Path:
        return self.models_dir / self.MODEL_FILE_NAME
