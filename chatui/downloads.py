import sys
from contextlib import redirect_stderr
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Optional

from huggingface_hub import HfApi, hf_hub_download, try_to_load_from_cache

from .config import CACHE_DIR, HF_TOKEN
from .progress import ProgressBarStream

# Files the tokenizer/config side of a text-generation checkpoint needs.
SUPPORT_PATTERNS = ("*.json", "*.txt", "*.jinja", "*.tiktoken", "tokenizer.model", "spiece.model")
WEIGHT_PATTERNS = ("*.safetensors",)
LEGACY_WEIGHT_PATTERNS = ("pytorch_model*.bin",)
# Nested folders hold alternative exports (onnx/, gguf/, runs/) that transformers does not load.
IGNORE_PATTERNS = ("*/*", "*.onnx", "*.onnx_data", "*.gguf", "*.msgpack", "*.h5", "*.ot")


def normalize_hf_repo_id(model_id: Optional[str]) -> Optional[str]:
    if model_id is None:
        return None
    # Accept accidental Windows separators and normalize to HF repo syntax.
    normalized = model_id.strip().replace("\\", "/")
    normalized = "/".join(part.strip() for part in normalized.split("/") if part.strip())
    return normalized or None


def _matches_any(path_value: str, patterns) -> bool:
    if not patterns:
        return False
    return any(fnmatch(path_value, pattern) for pattern in patterns)


def list_repo_files_with_sizes(model_id: str, revision: Optional[str] = None, api=None):
    """Return ``[(filename, size_in_bytes_or_None), ...]`` for a Hub model repo."""
    api = api or HfApi(token=HF_TOKEN)
    info = api.model_info(model_id, revision=revision, files_metadata=True)
    files = []
    for sibling in info.siblings or []:
        name = sibling.rfilename
        if not name or name.endswith("/"):
            continue
        files.append((name, getattr(sibling, "size", None)))
    return files


def select_model_files(repo_files, model_file: Optional[str] = None):
    """Pick the files to fetch for one load attempt.

    With ``model_file`` only the support files plus that single weights
    artifact are selected, and a missing artifact raises ``FileNotFoundError``.
    Without it every top-level safetensors file is used, or the legacy
    ``pytorch_model*.bin`` files when the repo has no safetensors.
    """
    candidates = [(name, size) for name, size in repo_files if not _matches_any(name, IGNORE_PATTERNS)]
    support = [(name, size) for name, size in candidates if _matches_any(name, SUPPORT_PATTERNS)]

    if model_file:
        chosen = [(name, size) for name, size in repo_files if name == model_file]
        if not chosen:
            raise FileNotFoundError(f"Preferred model file {model_file} is not present in the repository.")
        return support + chosen

    weights = [(name, size) for name, size in candidates if _matches_any(name, WEIGHT_PATTERNS)]
    if not weights:
        weights = [(name, size) for name, size in candidates if _matches_any(name, LEGACY_WEIGHT_PATTERNS)]
    if not weights:
        raise RuntimeError("No .safetensors or .bin weight files found in the repository.")
    return support + weights


def _snapshot_root(local_path: str, filename: str) -> Path:
    depth = len(Path(filename).parts)
    return Path(local_path).parents[depth - 1]


def _file_progress(emit: Callable, filename: str, size: Optional[int]):
    """Map a download bar fraction to a structured ``progress`` event for ``filename``."""

    def _on_fraction(fraction: float):
        emit(
            {
                "status": "progress",
                "file": filename,
                "progress": fraction * 100,
                "loaded": int(fraction * size) if size else None,
                "total": size,
            }
        )

    return _on_fraction


def download_model_files(
    model_id: str,
    files,
    progress_callback: Optional[Callable] = None,
    revision: Optional[str] = None,
    cache_dir: Optional[str] = None,
    download=hf_hub_download,
) -> Path:
    """Fetch ``files`` into the Hub cache and return the local snapshot directory.

    ``progress_callback`` receives structured events
    ``{"status": "initiate" | "progress" | "done", "file", "progress", "loaded", "total"}``.
    """
    if not files:
        raise RuntimeError("No files matched the selected patterns for download.")

    cache_dir = cache_dir or CACHE_DIR

    def _emit(payload: dict):
        if progress_callback is not None:
            progress_callback(payload)

    snapshot_dir = None
    for filename, size in files:
        _emit({"status": "initiate", "file": filename, "total": size})

        cached = try_to_load_from_cache(model_id, filename, cache_dir=cache_dir, revision=revision)
        if isinstance(cached, str):
            local_path = cached
            _emit({"status": "progress", "file": filename, "progress": 100, "loaded": size, "total": size})
        else:
            stream = ProgressBarStream(_file_progress(_emit, filename, size), sys.stderr)
            with redirect_stderr(stream):
                local_path = download(
                    repo_id=model_id,
                    filename=filename,
                    revision=revision,
                    cache_dir=cache_dir,
                    token=HF_TOKEN,
                )

        _emit({"status": "done", "file": filename, "loaded": size, "total": size})
        if snapshot_dir is None:
            snapshot_dir = _snapshot_root(local_path, filename)

    return snapshot_dir
