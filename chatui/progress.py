"""Download/load progress aggregation.

The worker receives progress for several files at once (config, tokenizer,
weights) plus a raw fraction while checkpoint shards are read into memory.
Every value is normalized into a :class:`ProgressUpdate` and folded into one
overall percentage by a tracker.

Two trackers are provided:

- :class:`ProgressTracker` averages the last known percentage of every file
  it has seen. Finished files stay in the map at 100.
- :class:`WeightedProgressTracker` keeps a fixed denominator of registered
  files; finished files leave the in-progress map and count as 100 each.

Which one the worker uses is a configuration choice (``CHATUI_PROGRESS_MODE``).
"""

import io
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

PROGRESS_MODES = ("mean", "weighted")

_PERCENT_RE = re.compile(r"(\d{1,3})%")


def clamp_percent(value: float) -> float:
    return min(max(float(value), 0.0), 100.0)


def format_percentage(value: Any) -> float:
    """Coerce ``value`` to a percentage in ``[0, 100]``; anything unparsable is 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return clamp_percent(number)


@dataclass(frozen=True)
class ProgressUpdate:
    """One normalized progress callback value.

    ``kind`` is ``"initiate"``, ``"progress"`` or ``"done"``. ``source`` records
    which callback shape produced it (``"fraction"`` or ``"file"``).
    """

    kind: str
    file: str
    progress: float = 0.0
    loaded: Optional[int] = None
    total: Optional[int] = None
    source: str = "file"

    def size_label(self) -> str:
        if self.source == "fraction":
            return "loading model"
        if self.loaded:
            return f"{self.loaded / 1024 / 1024:.1f}MB"
        return "loading"


def normalize_progress(raw: Any, default_file: str = "model") -> Optional[ProgressUpdate]:
    """Normalize a raw progress callback value.

    Accepts a fraction in ``[0, 1]`` (scaled to a percentage against
    ``default_file``) or a mapping ``{"status", "file", "progress", "loaded",
    "total"}``. Returns ``None`` for shapes that carry no usable progress.
    """
    if isinstance(raw, bool):
        return None

    if isinstance(raw, (int, float)):
        return ProgressUpdate(
            kind="progress",
            file=default_file,
            progress=format_percentage(raw * 100),
            source="fraction",
        )

    if not isinstance(raw, dict):
        return None

    status = raw.get("status")
    file_id = str(raw.get("file") or default_file)
    loaded = raw.get("loaded") if isinstance(raw.get("loaded"), int) else None
    total = raw.get("total") if isinstance(raw.get("total"), int) else None

    if status == "initiate":
        return ProgressUpdate(kind="initiate", file=file_id, progress=0.0, total=total)
    if status == "progress":
        value = raw.get("progress")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return ProgressUpdate(
            kind="progress",
            file=file_id,
            progress=format_percentage(value),
            loaded=loaded,
            total=total,
        )
    if status == "done":
        return ProgressUpdate(kind="done", file=file_id, progress=100.0, loaded=loaded, total=total)
    return None


class ProgressTracker:
    """Mean of the last known percentage of every tracked file."""

    def __init__(self):
        self._lock = threading.Lock()
        self._files: dict[str, float] = {}

    def update(self, file_id: str, percent: float) -> float:
        with self._lock:
            self._files[file_id] = clamp_percent(percent)
            return self._overall_locked()

    def complete(self, file_id: str) -> float:
        with self._lock:
            self._files[file_id] = 100.0
            return self._overall_locked()

    def reset(self) -> None:
        with self._lock:
            self._files.clear()

    def overall(self) -> float:
        with self._lock:
            return self._overall_locked()

    def files(self) -> dict[str, float]:
        with self._lock:
            return dict(self._files)

    def _overall_locked(self) -> float:
        if not self._files:
            return 0.0
        return sum(self._files.values()) / len(self._files)


class WeightedProgressTracker:
    """Overall progress against a fixed count of registered files."""

    def __init__(self):
        self._lock = threading.Lock()
        self._in_progress: dict[str, float] = {}
        self._completed: set[str] = set()
        self.total_files = 0
        self.loaded_files = 0

    def register(self, file_id: str) -> None:
        with self._lock:
            self._register_locked(file_id)

    def update(self, file_id: str, percent: float) -> float:
        with self._lock:
            # An unseen file must join the denominator before it contributes.
            self._register_locked(file_id)
            if file_id not in self._completed:
                self._in_progress[file_id] = clamp_percent(percent)
            return self._overall_locked()

    def complete(self, file_id: str) -> float:
        with self._lock:
            self._register_locked(file_id)
            if file_id not in self._completed:
                self._in_progress.pop(file_id, None)
                self._completed.add(file_id)
                self.loaded_files += 1
            return self._overall_locked()

    def reset(self) -> None:
        with self._lock:
            self._in_progress.clear()
            self._completed.clear()
            self.total_files = 0
            self.loaded_files = 0

    def overall(self) -> float:
        with self._lock:
            return self._overall_locked()

    def files(self) -> dict[str, float]:
        with self._lock:
            snapshot = dict(self._in_progress)
            snapshot.update({file_id: 100.0 for file_id in self._completed})
            return snapshot

    def _register_locked(self, file_id: str) -> None:
        if file_id in self._in_progress or file_id in self._completed:
            return
        self._in_progress[file_id] = 0.0
        self.total_files += 1

    def _overall_locked(self) -> float:
        if self.total_files == 0:
            return 0.0
        in_flight = sum(self._in_progress.values())
        return (in_flight + 100.0 * self.loaded_files) / self.total_files


class ProgressBarStream(io.TextIOBase):
    """Stderr tee that turns progress-bar percentages into raw fractions.

    Used under ``redirect_stderr`` while a library draws tqdm bars (Hub
    downloads, checkpoint shard loading). Repeated percentages are reported once.
    """

    def __init__(self, progress_callback: Optional[Callable], passthrough):
        super().__init__()
        self._progress_callback = progress_callback
        self._passthrough = passthrough
        self._last = None

    def write(self, s):
        if s is None:
            return 0
        text = s if isinstance(s, str) else str(s)

        if self._passthrough is not None:
            try:
                self._passthrough.write(text)
                self._passthrough.flush()
            except (OSError, ValueError):
                pass

        if self._progress_callback is not None:
            for chunk in re.split(r"[\r\n]+", text):
                match = _PERCENT_RE.search(chunk)
                if not match:
                    continue
                value = min(int(match.group(1)), 100)
                if value != self._last:
                    self._last = value
                    self._progress_callback(value / 100)

        return len(text)

    def flush(self):
        if self._passthrough is not None:
            try:
                self._passthrough.flush()
            except (OSError, ValueError):
                pass


def make_tracker(mode: Optional[str] = None):
    mode = (mode or "mean").strip().lower()
    if mode == "mean":
        return ProgressTracker()
    if mode == "weighted":
        return WeightedProgressTracker()
    raise ValueError(f"Unsupported progress mode: {mode}. Expected one of {', '.join(PROGRESS_MODES)}.")


def apply_update(tracker, update: ProgressUpdate) -> float:
    """Feed one normalized update into ``tracker`` and return the new overall."""
    if update.kind == "done":
        return tracker.complete(update.file)
    return tracker.update(update.file, update.progress)
