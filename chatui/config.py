import os
from pathlib import Path
from typing import Optional

import torch
from dotenv import load_dotenv


def _default_device() -> str:
    return "cuda:0" if torch.cuda.is_available() else "cpu"


PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_FILE = PROJECT_ROOT / ".env"
TEMPLATES_DIR = PROJECT_ROOT / "templates"
load_dotenv(ENV_FILE, override=False)


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_int(name: str, default: int) -> int:
    value = _getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    value = _getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _getenv_bool(name: str, default: bool) -> bool:
    value = _getenv(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def normalize_device(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    value = value.split()[0]
    if value == "cuda":
        return "cuda:0"
    return value


MODEL_ID = _getenv("CHATUI_MODEL_ID", "HuggingFaceTB/SmolLM2-360M-Instruct")
# Preferred packaged weights artifact; the loader falls back to the default file set once.
MODEL_FILE = _getenv("CHATUI_MODEL_FILE", "model.safetensors")
MODEL_REVISION = _getenv("CHATUI_MODEL_REVISION")
CACHE_DIR = _getenv("CHATUI_CACHE_DIR")
DEVICE = normalize_device(_getenv("CHATUI_DEVICE")) or _default_device()
NUM_THREADS = max(1, _getenv_int("CHATUI_NUM_THREADS", 1))
HF_TOKEN = _getenv("HF_TOKEN")

REQUEST_TIMEOUT_SEC = max(1.0, _getenv_float("CHATUI_REQUEST_TIMEOUT_SEC", 60.0))
HEARTBEAT_INTERVAL_SEC = max(0.1, _getenv_float("CHATUI_HEARTBEAT_INTERVAL_SEC", 5.0))
HEARTBEAT_MAX_MISSED = max(1, _getenv_int("CHATUI_HEARTBEAT_MAX_MISSED", 2))

PROGRESS_MODE = (_getenv("CHATUI_PROGRESS_MODE", "mean") or "mean").lower()
STATE_FILE = Path(_getenv("CHATUI_STATE_FILE") or str(PROJECT_ROOT / ".chatui" / "state.json"))
LOG_LEVEL = (_getenv("CHATUI_LOG_LEVEL", "INFO") or "INFO").upper()
RELOAD = _getenv_bool("CHATUI_RELOAD", False)
PORT = _getenv_int("PORT", 8000)

# Decoding parameters shared by every request.
MAX_NEW_TOKENS = 128
TEMPERATURE = 0.7
TOP_P = 0.8
DO_SAMPLE = True


def _find_favicon() -> Optional[Path]:
    for name in ("favicon.ico", "favicon.png", "favicon.svg"):
        candidate = PROJECT_ROOT / name
        if candidate.exists() and candidate.is_file():
            return candidate
    return None


def current_favicon_path() -> Optional[Path]:
    return _find_favicon()
