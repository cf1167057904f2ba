import time

import pytest

from chatui import model_runtime


class FakePipeline:
    """Stands in for a transformers text-generation pipeline."""

    def __init__(self, reply="Hello from the model.", output=None):
        self.reply = reply
        self.output = output
        self.calls = []

    def __call__(self, chat, **kwargs):
        self.calls.append((chat, kwargs))
        if self.output is not None:
            return self.output
        return [{"generated_text": list(chat) + [{"role": "assistant", "content": self.reply}]}]


def _wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def reset_pipeline():
    model_runtime.dispose_pipeline()
    yield
    model_runtime.dispose_pipeline()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def fake_pipeline():
    return FakePipeline()


@pytest.fixture
def fake_loader(fake_pipeline):
    """Loader that reports progress in both callback shapes before returning."""
    calls = []

    def loader(progress_callback):
        calls.append(progress_callback)
        progress_callback({"status": "initiate", "file": "config.json", "total": 1024})
        progress_callback({"status": "progress", "file": "config.json", "progress": 50, "loaded": 5 * 1024 * 1024})
        progress_callback({"status": "done", "file": "config.json"})
        progress_callback(0.5)
        progress_callback(1.0)
        return fake_pipeline

    loader.calls = calls
    return loader
