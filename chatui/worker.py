"""Background inference worker.

The worker owns a message loop thread and a single-thread generation
executor. Prompts ``{"text": ...}`` are queued to the executor and processed
one at a time; heartbeats ``{"type": "heartbeat"}`` are echoed straight from
the loop thread so a long generation never delays the liveness reply.

Every event goes back through ``post_message`` as a plain dict shaped like
:class:`chatui.schemas.WorkerMessage`.
"""

import logging
import queue
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from . import model_runtime
from .config import PROGRESS_MODE, REQUEST_TIMEOUT_SEC
from .progress import apply_update, make_tracker, normalize_progress
from .schemas import GeneratedText, WorkerMessage

logger = logging.getLogger(__name__)

_STOP = object()


class _Request:
    def __init__(self, request_id: str, text: str):
        self.request_id = request_id
        self.text = text
        self.lock = threading.Lock()
        self.finished = False


class InferenceWorker:
    def __init__(
        self,
        post_message: Callable[[dict], None],
        worker_id: Optional[str] = None,
        loader: Optional[Callable] = None,
        generate: Optional[Callable] = None,
        timeout_sec: float = REQUEST_TIMEOUT_SEC,
        progress_mode: str = PROGRESS_MODE,
    ):
        self.worker_id = worker_id or uuid.uuid4().hex
        self.timeout_sec = timeout_sec
        self._post_message = post_message
        self._loader = loader
        self._generate = generate or model_runtime.generate_reply
        self._tracker = make_tracker(progress_mode)
        self._inbox: "queue.Queue" = queue.Queue()
        self._terminated = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"chatui-generate-{self.worker_id[:8]}")
        self._thread = threading.Thread(target=self._run, name=f"chatui-worker-{self.worker_id[:8]}", daemon=True)

    @property
    def tracker(self):
        return self._tracker

    def start(self) -> "InferenceWorker":
        self._thread.start()
        return self

    def is_alive(self) -> bool:
        return self._thread.is_alive() and not self._terminated.is_set()

    def post_message(self, message: dict):
        if self._terminated.is_set():
            raise RuntimeError(f"Worker {self.worker_id} has been terminated.")
        self._inbox.put(message)

    def terminate(self):
        if self._terminated.is_set():
            return
        self._terminated.set()
        self._inbox.put(_STOP)
        # A generation already running cannot be interrupted; its thread is abandoned.
        self._executor.shutdown(wait=False, cancel_futures=True)
        model_runtime.dispose_pipeline()
        logger.info("Worker %s terminated", self.worker_id)

    def _emit(self, payload: dict):
        if self._terminated.is_set():
            return
        self._post_message(payload)

    def _run(self):
        while not self._terminated.is_set():
            message = self._inbox.get()
            if message is _STOP:
                break
            try:
                self._handle(message)
            except Exception as exc:
                logger.exception("Worker %s failed to handle a message", self.worker_id)
                self._emit(WorkerMessage(status="error", message=f"Worker global error: {exc}").to_payload())

    def _handle(self, message):
        if not isinstance(message, dict):
            raise TypeError(f"Unsupported message type: {type(message).__name__}")

        if message.get("type") == "heartbeat":
            self._emit(WorkerMessage(type="heartbeat").to_payload())
            return

        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Prompt message requires a non-empty 'text' field.")

        request = _Request(str(message.get("request_id") or uuid.uuid4().hex), text)
        self._executor.submit(self._process, request)

    def _emit_for(self, request: _Request, terminal: bool = False, **fields) -> bool:
        payload = WorkerMessage(request_id=request.request_id, **fields).to_payload()
        with request.lock:
            if request.finished:
                return False
            if terminal:
                request.finished = True
            self._emit(payload)
        return True

    def _on_timeout(self, request: _Request):
        if self._emit_for(
            request,
            terminal=True,
            status="error",
            message=f"Operation timed out after {self.timeout_sec:g} seconds",
        ):
            logger.error("Request %s timed out after %gs", request.request_id, self.timeout_sec)

    def _on_progress(self, request: _Request, raw):
        update = normalize_progress(raw)
        if update is None:
            return
        overall = apply_update(self._tracker, update)
        if update.kind == "initiate":
            self._emit_for(
                request, status="initiate", file=update.file, progress=0.0, total=update.size_label(), overall=overall
            )
        elif update.kind == "progress":
            self._emit_for(
                request,
                status="progress",
                file=update.file,
                progress=update.progress,
                total=update.size_label(),
                overall=overall,
            )
        else:
            self._emit_for(request, status="fileLoaded", file=update.file, overall=overall)

    def _process(self, request: _Request):
        timer = threading.Timer(self.timeout_sec, self._on_timeout, args=(request,))
        timer.daemon = True
        timer.start()
        try:
            if model_runtime.is_pipeline_loaded():
                generator = model_runtime.get_pipeline(loader=self._loader)
            else:
                self._tracker.reset()
                self._emit_for(
                    request, status="initiate", file="model", progress=0.0, total="loading model", overall=0.0
                )
                generator = model_runtime.get_pipeline(
                    progress_callback=lambda raw: self._on_progress(request, raw),
                    loader=self._loader,
                )
                self._emit_for(request, status="done", file="model", overall=100.0)
            self._emit_for(request, status="ready")

            logger.info("Generating reply for request %s", request.request_id)
            reply = self._generate(generator, request.text)
            self._emit_for(request, terminal=True, status="complete", output=[GeneratedText(generated_text=reply)])
        except Exception as exc:
            logger.error("Request %s failed: %s", request.request_id, exc)
            self._emit_for(request, terminal=True, status="error", message=f"Error: {exc}. Check logs for details.")
        finally:
            timer.cancel()
