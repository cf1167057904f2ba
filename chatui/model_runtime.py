import gc
import json
import logging
import sys
import threading
from concurrent.futures import Future
from contextlib import redirect_stderr
from pathlib import Path
from typing import Callable, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, pipeline

from .config import (
    DEVICE,
    DO_SAMPLE,
    MAX_NEW_TOKENS,
    MODEL_FILE,
    MODEL_ID,
    MODEL_REVISION,
    NUM_THREADS,
    TEMPERATURE,
    TOP_P,
)
from .downloads import download_model_files, list_repo_files_with_sizes, normalize_hf_repo_id, select_model_files
from .progress import ProgressBarStream

logger = logging.getLogger(__name__)

TASK = "text-generation"

_pipeline = None
_pipeline_future: Optional[Future] = None
_pipeline_epoch = 0
_pipeline_lock = threading.Lock()


def _report(progress_callback: Optional[Callable], value):
    if progress_callback is not None:
        progress_callback(value)


def _dispose_model_instance(generator):
    if generator is None:
        return
    hf_model = getattr(generator, "model", None)
    if hf_model is None:
        return
    try:
        hf_model.cpu()
    except (RuntimeError, AttributeError) as exc:
        logger.debug("Unable to move model to cpu during teardown: %s", exc)


def _cleanup_model(generator=None):
    _dispose_model_instance(generator)
    if torch.cuda.is_available():
        torch.cuda.empty_cache()
    gc.collect()


def _load_from_snapshot(snapshot_dir: Path, device: str, progress_callback: Optional[Callable]):
    use_cuda = device.startswith("cuda")
    if use_cuda and not torch.cuda.is_available():
        raise RuntimeError(f"Requested device {device}, but CUDA is not available.")
    if not use_cuda:
        torch.set_num_threads(NUM_THREADS)

    logger.info("Loading tokenizer from %s", snapshot_dir)
    tokenizer = AutoTokenizer.from_pretrained(str(snapshot_dir))
    if getattr(tokenizer, "pad_token_id", None) is None and getattr(tokenizer, "eos_token_id", None) is not None:
        tokenizer.pad_token = tokenizer.eos_token

    logger.info("Loading checkpoint from %s", snapshot_dir)
    _report(progress_callback, 0.0)
    model_kwargs = {"low_cpu_mem_usage": True}
    if use_cuda:
        model_kwargs["torch_dtype"] = "auto"
    with redirect_stderr(ProgressBarStream(progress_callback, sys.stderr)):
        hf_model = AutoModelForCausalLM.from_pretrained(str(snapshot_dir), **model_kwargs)
    _report(progress_callback, 1.0)

    hf_model.eval()
    return pipeline(TASK, model=hf_model, tokenizer=tokenizer, device=device)


def load_pipeline(
    progress_callback: Optional[Callable] = None,
    model_id: Optional[str] = None,
    model_file: Optional[str] = MODEL_FILE,
    revision: Optional[str] = MODEL_REVISION,
    device: Optional[str] = None,
    api=None,
    download=None,
):
    """Download (if needed) and build the text-generation pipeline.

    The preferred attempt fetches only ``model_file`` as weights. If it fails
    the default file set is tried once; a second failure raises.
    """
    target_model_id = normalize_hf_repo_id(model_id or MODEL_ID)
    if not target_model_id:
        raise ValueError("model_id is required.")
    target_device = device or DEVICE

    repo_files = list_repo_files_with_sizes(target_model_id, revision=revision, api=api)

    attempts = [model_file, None] if model_file else [None]
    load_errors = []
    last_error = None
    for candidate in attempts:
        label = candidate or "default files"
        try:
            files = select_model_files(repo_files, model_file=candidate)
            download_kwargs = {}
            if download is not None:
                download_kwargs["download"] = download
            snapshot_dir = download_model_files(
                target_model_id,
                files,
                progress_callback=progress_callback,
                revision=revision,
                **download_kwargs,
            )
            generator = _load_from_snapshot(snapshot_dir, target_device, progress_callback)
            logger.info("Model %s loaded with %s on %s", target_model_id, label, target_device)
            return generator
        except Exception as exc:
            last_error = exc
            load_errors.append(f"{label} load failed: {exc}")
            logger.warning("Loading %s with %s failed: %s", target_model_id, label, exc)
            # Release partial allocations before the fallback attempt.
            _cleanup_model()

    raise RuntimeError("Model load failed. " + " | ".join(load_errors)) from last_error


def get_pipeline(progress_callback: Optional[Callable] = None, loader: Optional[Callable] = None):
    """Return the process-wide pipeline, loading it on first use.

    Concurrent first callers share one initialization future, so the loader
    runs once. Only the caller that triggers the load sees progress.
    """
    global _pipeline, _pipeline_future

    with _pipeline_lock:
        if _pipeline is not None:
            return _pipeline
        future = _pipeline_future
        owner = future is None
        if owner:
            future = Future()
            _pipeline_future = future
        epoch = _pipeline_epoch

    if not owner:
        return future.result()

    try:
        generator = (loader or load_pipeline)(progress_callback)
    except Exception as exc:
        with _pipeline_lock:
            if _pipeline_future is future:
                _pipeline_future = None
        future.set_exception(exc)
        raise

    with _pipeline_lock:
        if _pipeline_future is future:
            _pipeline_future = None
        if epoch == _pipeline_epoch:
            _pipeline = generator
    future.set_result(generator)
    return generator


def is_pipeline_loaded() -> bool:
    with _pipeline_lock:
        return _pipeline is not None


def dispose_pipeline():
    """Drop the cached pipeline; a load still in flight will not be installed."""
    global _pipeline, _pipeline_future, _pipeline_epoch

    with _pipeline_lock:
        previous = _pipeline
        _pipeline = None
        _pipeline_future = None
        _pipeline_epoch += 1
    if previous is not None:
        _cleanup_model(previous)


def _safe_json(value) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return repr(value)


def extract_generated_text(output) -> str:
    """Pull the reply text out of a text-generation pipeline result.

    Never raises: unexpected shapes come back as a diagnostic string.
    """
    if not isinstance(output, (list, tuple)) or not output:
        return "No output generated"

    first = output[0]
    generated = first.get("generated_text") if isinstance(first, dict) else None
    if isinstance(generated, str) and generated:
        return generated
    if isinstance(generated, list):
        last_turn = generated[-1] if generated else None
        content = last_turn.get("content") if isinstance(last_turn, dict) else None
        if isinstance(content, str) and content:
            return content
        return "No response generated"
    return "Received response in unexpected format: " + _safe_json(output)


def generate_reply(generator, text: str) -> str:
    chat_prompt = [{"role": "user", "content": text}]
    output = generator(
        chat_prompt,
        max_new_tokens=MAX_NEW_TOKENS,
        temperature=TEMPERATURE,
        top_p=TOP_P,
        do_sample=DO_SAMPLE,
    )
    return extract_generated_text(output)
