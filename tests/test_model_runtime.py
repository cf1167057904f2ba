import threading
import time

import pytest

from chatui import model_runtime
from chatui.config import DO_SAMPLE, MAX_NEW_TOKENS, TEMPERATURE, TOP_P

from conftest import FakePipeline


class TestExtractGeneratedText:
    def test_plain_string(self):
        assert model_runtime.extract_generated_text([{"generated_text": "hi there"}]) == "hi there"

    def test_conversation_takes_last_turn(self):
        output = [
            {
                "generated_text": [
                    {"role": "user", "content": "hello"},
                    {"role": "assistant", "content": "hi!"},
                ]
            }
        ]
        assert model_runtime.extract_generated_text(output) == "hi!"

    def test_empty_conversation(self):
        assert model_runtime.extract_generated_text([{"generated_text": []}]) == "No response generated"

    def test_empty_string_is_a_diagnostic(self):
        text = model_runtime.extract_generated_text([{"generated_text": ""}])
        assert text == 'Received response in unexpected format: [{"generated_text": ""}]'

    @pytest.mark.parametrize("output", [[], None, "text", {"generated_text": "x"}])
    def test_no_output(self, output):
        assert model_runtime.extract_generated_text(output) == "No output generated"

    def test_missing_generated_text_is_a_diagnostic(self):
        text = model_runtime.extract_generated_text([{"summary": "nope"}])
        assert text.startswith("Received response in unexpected format: ")
        assert '"summary"' in text

    def test_unserializable_output_does_not_raise(self):
        text = model_runtime.extract_generated_text([{"generated_text": 42, "obj": object()}])
        assert text.startswith("Received response in unexpected format: ")


def test_generate_reply_uses_fixed_decoding_parameters():
    generator = FakePipeline("pong")
    assert model_runtime.generate_reply(generator, "ping") == "pong"

    chat, kwargs = generator.calls[0]
    assert chat == [{"role": "user", "content": "ping"}]
    assert kwargs == {
        "max_new_tokens": MAX_NEW_TOKENS,
        "temperature": TEMPERATURE,
        "top_p": TOP_P,
        "do_sample": DO_SAMPLE,
    }


class TestPipelineSingleton:
    def test_loader_runs_once_for_concurrent_callers(self):
        calls = []
        pipe = FakePipeline()

        def loader(progress_callback):
            calls.append(progress_callback)
            time.sleep(0.1)
            return pipe

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(model_runtime.get_pipeline(loader=loader)))
            for _ in range(5)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert len(calls) == 1
        assert results == [pipe] * 5
        assert model_runtime.is_pipeline_loaded()

    def test_cached_pipeline_skips_loader(self):
        pipe = FakePipeline()
        model_runtime.get_pipeline(loader=lambda cb: pipe)

        def failing_loader(progress_callback):
            raise AssertionError("loader should not run again")

        assert model_runtime.get_pipeline(loader=failing_loader) is pipe

    def test_failed_load_can_be_retried(self):
        def broken(progress_callback):
            raise RuntimeError("no network")

        with pytest.raises(RuntimeError, match="no network"):
            model_runtime.get_pipeline(loader=broken)
        assert not model_runtime.is_pipeline_loaded()

        pipe = FakePipeline()
        assert model_runtime.get_pipeline(loader=lambda cb: pipe) is pipe

    def test_dispose_drops_pipeline(self):
        model_runtime.get_pipeline(loader=lambda cb: FakePipeline())
        model_runtime.dispose_pipeline()
        assert not model_runtime.is_pipeline_loaded()

    def test_load_finishing_after_dispose_is_not_installed(self):
        started = threading.Event()
        release = threading.Event()

        def slow_loader(progress_callback):
            started.set()
            release.wait(5)
            return FakePipeline()

        thread = threading.Thread(target=lambda: model_runtime.get_pipeline(loader=slow_loader))
        thread.start()
        assert started.wait(5)
        model_runtime.dispose_pipeline()
        release.set()
        thread.join(5)

        assert not model_runtime.is_pipeline_loaded()


class TestLoadPipeline:
    @pytest.fixture
    def repo(self, monkeypatch, tmp_path):
        state = {"files": [], "downloads": [], "loads": 0, "load_error": None}

        def fake_list(model_id, revision=None, api=None):
            return state["files"]

        def fake_download(model_id, files, progress_callback=None, revision=None, **kwargs):
            state["downloads"].append([name for name, _ in files])
            return tmp_path

        def fake_load(snapshot_dir, device, progress_callback):
            state["loads"] += 1
            if state["load_error"] is not None:
                raise state["load_error"]
            return "PIPELINE"

        monkeypatch.setattr(model_runtime, "list_repo_files_with_sizes", fake_list)
        monkeypatch.setattr(model_runtime, "download_model_files", fake_download)
        monkeypatch.setattr(model_runtime, "_load_from_snapshot", fake_load)
        return state

    def test_preferred_artifact_is_used_when_present(self, repo):
        repo["files"] = [("config.json", 10), ("model.safetensors", 100), ("model-fp32.safetensors", 200)]

        result = model_runtime.load_pipeline(model_id="org/model", model_file="model.safetensors", device="cpu")

        assert result == "PIPELINE"
        assert repo["downloads"] == [["config.json", "model.safetensors"]]

    def test_falls_back_to_default_files_once(self, repo):
        repo["files"] = [
            ("config.json", 10),
            ("model-00001-of-00002.safetensors", 100),
            ("model-00002-of-00002.safetensors", 100),
        ]

        result = model_runtime.load_pipeline(model_id="org/model", model_file="model.safetensors", device="cpu")

        assert result == "PIPELINE"
        assert repo["downloads"] == [
            ["config.json", "model-00001-of-00002.safetensors", "model-00002-of-00002.safetensors"]
        ]

    def test_second_failure_is_fatal(self, repo):
        repo["files"] = [("config.json", 10), ("model.safetensors", 100)]
        repo["load_error"] = RuntimeError("corrupt weights")

        with pytest.raises(RuntimeError, match="Model load failed") as excinfo:
            model_runtime.load_pipeline(model_id="org/model", model_file="model.safetensors", device="cpu")

        assert repo["loads"] == 2
        assert "model.safetensors load failed" in str(excinfo.value)
        assert "default files load failed" in str(excinfo.value)

    def test_blank_model_id_is_rejected(self, repo, monkeypatch):
        monkeypatch.setattr(model_runtime, "MODEL_ID", "  ")
        with pytest.raises(ValueError):
            model_runtime.load_pipeline(model_id=None)
