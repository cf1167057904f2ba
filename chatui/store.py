import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from .config import STATE_FILE
from .schemas import ChatMessage

logger = logging.getLogger(__name__)

CONVERSATION_KEY = "conversation"
MODEL_LOADED_KEY = "model_loaded"


def _write_json(path: Path, payload: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    tmp_path.replace(path)


class ChatStore:
    """Small JSON key-value file holding the persisted chat state."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or STATE_FILE)
        self._lock = threading.Lock()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any):
        with self._lock:
            data = self._read()
            data[key] = value
            _write_json(self.path, data)

    def load_conversation(self) -> list[ChatMessage]:
        raw = self.get(CONVERSATION_KEY, [])
        if not isinstance(raw, list):
            return []
        messages = []
        for item in raw:
            try:
                messages.append(ChatMessage.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed stored message: %r", item)
        return messages

    def save_conversation(self, messages: Iterable[ChatMessage]):
        self.set(CONVERSATION_KEY, [message.model_dump() for message in messages])

    def model_loaded(self) -> bool:
        return bool(self.get(MODEL_LOADED_KEY, False))

    def set_model_loaded(self, value: bool = True):
        self.set(MODEL_LOADED_KEY, bool(value))
