"""Page-side chat controller.

Holds the conversation and the status shown by the page, forwards prompts to
the supervised worker and folds worker events back into state.
"""

import logging
import threading
import time
import uuid
from collections import deque
from typing import Callable, Optional

from .progress import format_percentage
from .schemas import ChatMessage, ChatState
from .store import ChatStore
from .supervisor import WorkerState, WorkerSupervisor
from .worker import InferenceWorker

logger = logging.getLogger(__name__)

MAX_LOG_LINES = 300


class ChatBusyError(RuntimeError):
    pass


def default_worker_factory(post_message: Callable[[dict], None]):
    return InferenceWorker(post_message).start()


class ChatController:
    def __init__(
        self,
        store: Optional[ChatStore] = None,
        worker_factory: Optional[Callable] = None,
        **supervisor_kwargs,
    ):
        self.store = store or ChatStore()
        self._lock = threading.RLock()
        self._conversation = self.store.load_conversation()
        self._model_loaded_before = self.store.model_loaded()
        self._model_loaded = False
        self._logs = deque(maxlen=MAX_LOG_LINES)
        self._pending_request: Optional[str] = None
        self._status = "idle"
        self._error: Optional[str] = None
        self._progress_file: Optional[str] = None
        self._progress = 0.0
        self._overall = 0.0
        self._progress_text: Optional[str] = None

        self.supervisor = WorkerSupervisor(
            worker_factory or default_worker_factory,
            on_message=self.handle_worker_message,
            on_error=self.handle_worker_error,
            **supervisor_kwargs,
        )

    def _log(self, message: str):
        self._logs.append(f"{time.strftime('%H:%M:%S')} {message}")

    def start(self):
        self.supervisor.ensure_worker()
        self.supervisor.start()

    def shutdown(self):
        self.supervisor.stop()

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._pending_request is not None

    def send(self, text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text is required.")

        request_id = uuid.uuid4().hex
        with self._lock:
            if self._pending_request is not None:
                raise ChatBusyError("A reply is still being generated. Wait for it before sending another message.")
            self._conversation.append(ChatMessage(role="user", text=text))
            self.store.save_conversation(self._conversation)
            self._pending_request = request_id
            self._error = None
            self._status = "generating" if self._model_loaded else "loading"
            self._log(f"Sent prompt ({len(text)} chars)")

        try:
            self.supervisor.post({"text": text, "request_id": request_id})
        except Exception as exc:
            with self._lock:
                if self._pending_request == request_id:
                    self._pending_request = None
                    self._status = "error"
                    self._error = self._error or f"Worker unavailable: {exc}"
            raise RuntimeError(f"Worker unavailable: {exc}") from exc
        return request_id

    def handle_worker_message(self, message: dict):
        status = message.get("status")
        with self._lock:
            request_id = message.get("request_id")
            if request_id is not None and request_id != self._pending_request:
                return

            if status in ("initiate", "progress"):
                self._status = "loading"
                self._progress_file = message.get("file")
                self._progress = format_percentage(message.get("progress"))
                self._overall = format_percentage(message.get("overall"))
                self._progress_text = message.get("total")
                if status == "initiate":
                    self._log(f"Loading {self._progress_file}")
            elif status in ("fileLoaded", "done"):
                self._progress_file = message.get("file")
                self._overall = format_percentage(message.get("overall"))
                self._log(f"Loaded {self._progress_file} ({self._overall:.1f}% overall)")
            elif status == "ready":
                self._model_loaded = True
                self._status = "generating"
                self._overall = 100.0
                if not self._model_loaded_before:
                    self._model_loaded_before = True
                    self.store.set_model_loaded(True)
                self._log("Model ready")
            elif status == "complete":
                output = message.get("output") or [{}]
                text = str(output[0].get("generated_text") or "")
                self._conversation.append(ChatMessage(role="bot", text=text))
                self.store.save_conversation(self._conversation)
                self._pending_request = None
                self._status = "ready"
                self._log("Reply received")
            else:
                logger.debug("Ignoring worker message %r", message)

    def handle_worker_error(self, reason: str):
        with self._lock:
            self._error = reason
            self._pending_request = None
            self._model_loaded = False
            self._status = "error"
            self._log(f"Error: {reason}")

    def clear_conversation(self):
        with self._lock:
            self._conversation = []
            self.store.save_conversation(self._conversation)
            self._log("Conversation cleared")

    def restart_worker(self):
        self.supervisor.restart()
        with self._lock:
            self._pending_request = None
            self._model_loaded = False
            self._error = None
            self._status = "idle"
            self._log("Worker restarted")

    def snapshot(self) -> ChatState:
        with self._lock:
            return ChatState(
                worker_state=self.supervisor.state.value,
                status=self._status,
                busy=self._pending_request is not None,
                model_loaded=self._model_loaded,
                model_loaded_before=self._model_loaded_before,
                progress_file=self._progress_file,
                progress=self._progress,
                overall=self._overall,
                progress_text=self._progress_text,
                error=self._error,
                conversation=list(self._conversation),
                logs=list(self._logs),
            )

    @property
    def worker_alive(self) -> bool:
        return self.supervisor.state == WorkerState.ALIVE
