import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from chatui import downloads

REPO_FILES = [
    (".gitattributes", 1),
    ("README.md", 2),
    ("config.json", 10),
    ("generation_config.json", 5),
    ("tokenizer.json", 20),
    ("tokenizer_config.json", 4),
    ("model.safetensors", 1000),
    ("onnx/model.onnx", 900),
    ("onnx/config.json", 10),
    ("model.gguf", 800),
]


def test_normalize_hf_repo_id():
    assert downloads.normalize_hf_repo_id(" org\\model ") == "org/model"
    assert downloads.normalize_hf_repo_id("org//model/") == "org/model"
    assert downloads.normalize_hf_repo_id("   ") is None
    assert downloads.normalize_hf_repo_id(None) is None


def test_list_repo_files_with_sizes_reads_siblings():
    siblings = [SimpleNamespace(rfilename="config.json", size=10), SimpleNamespace(rfilename="model.safetensors", size=None)]

    class FakeApi:
        def model_info(self, model_id, revision=None, files_metadata=False):
            assert files_metadata
            return SimpleNamespace(siblings=siblings)

    assert downloads.list_repo_files_with_sizes("org/model", api=FakeApi()) == [
        ("config.json", 10),
        ("model.safetensors", None),
    ]


class TestSelectModelFiles:
    def test_preferred_file_with_support_files(self):
        selected = [name for name, _ in downloads.select_model_files(REPO_FILES, model_file="model.safetensors")]
        assert selected == [
            "config.json",
            "generation_config.json",
            "tokenizer.json",
            "tokenizer_config.json",
            "model.safetensors",
        ]

    def test_preferred_file_in_subfolder_is_allowed(self):
        selected = [name for name, _ in downloads.select_model_files(REPO_FILES, model_file="onnx/model.onnx")]
        assert selected[-1] == "onnx/model.onnx"
        assert "onnx/config.json" not in selected

    def test_missing_preferred_file_raises(self):
        with pytest.raises(FileNotFoundError):
            downloads.select_model_files(REPO_FILES, model_file="model_q4f16.safetensors")

    def test_default_set_skips_alternative_exports(self):
        selected = [name for name, _ in downloads.select_model_files(REPO_FILES)]
        assert "model.safetensors" in selected
        assert "onnx/model.onnx" not in selected
        assert "model.gguf" not in selected

    def test_default_set_falls_back_to_bin_weights(self):
        files = [("config.json", 1), ("pytorch_model.bin", 100)]
        selected = [name for name, _ in downloads.select_model_files(files)]
        assert selected == ["config.json", "pytorch_model.bin"]

    def test_no_weights_raises(self):
        with pytest.raises(RuntimeError, match="No .safetensors or .bin"):
            downloads.select_model_files([("config.json", 1)])


class TestDownloadModelFiles:
    @pytest.fixture
    def snapshot(self, tmp_path, monkeypatch):
        monkeypatch.setattr(downloads, "try_to_load_from_cache", lambda *args, **kwargs: None)
        root = tmp_path / "snapshots" / "abc123"
        calls = []

        def fake_download(repo_id, filename, revision=None, cache_dir=None, token=None):
            calls.append(filename)
            target = root / filename
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text("x")
            return str(target)

        return SimpleNamespace(root=root, calls=calls, download=fake_download)

    def test_emits_structured_events_per_file(self, snapshot):
        events = []
        result = downloads.download_model_files(
            "org/model",
            [("config.json", 10), ("model.safetensors", 1000)],
            progress_callback=events.append,
            download=snapshot.download,
        )

        assert result == snapshot.root
        assert snapshot.calls == ["config.json", "model.safetensors"]
        assert [(event["status"], event["file"]) for event in events] == [
            ("initiate", "config.json"),
            ("done", "config.json"),
            ("initiate", "model.safetensors"),
            ("done", "model.safetensors"),
        ]
        assert events[-1]["loaded"] == 1000

    def test_download_bar_is_reported_as_file_progress(self, snapshot):
        def download_with_bar(**kwargs):
            sys.stderr.write(f"{kwargs['filename']}:   0%|          | 0.00/1.00k\r")
            sys.stderr.write(f"{kwargs['filename']}:  50%|#####     | 500/1.00k\r")
            sys.stderr.write(f"{kwargs['filename']}: 100%|##########| 1.00k/1.00k\n")
            return snapshot.download(**kwargs)

        events = []
        downloads.download_model_files(
            "org/model", [("model.safetensors", 1000)], progress_callback=events.append, download=download_with_bar
        )

        assert [event["status"] for event in events] == ["initiate", "progress", "progress", "progress", "done"]
        assert [event["progress"] for event in events[1:4]] == [0, 50, 100]
        assert events[2]["file"] == "model.safetensors"
        assert events[2]["loaded"] == 500
        assert events[2]["total"] == 1000

    def test_download_progress_without_known_size(self, snapshot):
        def download_with_bar(**kwargs):
            sys.stderr.write("config.json:  25%|##        |\r")
            return snapshot.download(**kwargs)

        events = []
        downloads.download_model_files(
            "org/model", [("config.json", None)], progress_callback=events.append, download=download_with_bar
        )

        assert events[1]["status"] == "progress"
        assert events[1]["progress"] == 25
        assert events[1]["loaded"] is None

    def test_cached_file_is_not_downloaded(self, snapshot, monkeypatch, tmp_path):
        cached = tmp_path / "cache" / "config.json"
        cached.parent.mkdir(parents=True)
        cached.write_text("{}")
        monkeypatch.setattr(downloads, "try_to_load_from_cache", lambda *args, **kwargs: str(cached))

        events = []
        result = downloads.download_model_files(
            "org/model", [("config.json", 10)], progress_callback=events.append, download=snapshot.download
        )

        assert snapshot.calls == []
        assert result == cached.parent
        assert [event["status"] for event in events] == ["initiate", "progress", "done"]
        assert events[1]["progress"] == 100

    def test_snapshot_root_for_nested_file(self, snapshot):
        result = downloads.download_model_files("org/model", [("onnx/model.onnx", 5)], download=snapshot.download)
        assert result == snapshot.root

    def test_empty_file_list_raises(self):
        with pytest.raises(RuntimeError):
            downloads.download_model_files("org/model", [])


def test_snapshot_root():
    assert downloads._snapshot_root("/c/snap/a/b.json", "a/b.json") == Path("/c/snap")
