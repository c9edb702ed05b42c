from __future__ import annotations

import json

from memory_engine import config as config_module
from memory_engine.config import (
    default_plugin_config,
    load_plugin_config,
    resolve_data_dir,
    resolve_project_id,
    sanitize_json,
)


def _write(path, payload) -> str:
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")
    return str(path)


def test_missing_file_gives_defaults(tmp_path) -> None:
    cfg = load_plugin_config(str(tmp_path / "nope.json"))
    assert cfg.embedding.provider == "local"
    assert cfg.embedding.model == "all-MiniLM-L6-v2"
    assert cfg.embedding.dimensions == 384
    assert cfg.logging is not None and cfg.logging.enabled is False


def test_camel_case_file_is_parsed(tmp_path) -> None:
    path = _write(
        tmp_path / "config.json",
        {
            "dataDir": "/tmp/mem",
            "embedding": {"provider": "openai", "model": "text-embedding-3-small", "apiKey": "", "baseUrl": " "},
            "dedupThreshold": 0.3,
            "compaction": {"maxContextTokens": 1200, "snapshotToKV": False},
            "logging": {"enabled": True},
        },
    )
    cfg = load_plugin_config(path)
    assert cfg.data_dir == "/tmp/mem"
    assert cfg.embedding.provider == "openai"
    assert cfg.embedding.api_key is None
    assert cfg.embedding.base_url is None
    assert cfg.dedup_threshold == 0.3
    assert cfg.compaction.max_context_tokens == 1200
    assert cfg.compaction.snapshot_to_kv is False
    assert cfg.compaction.custom_prompt is True
    assert cfg.logging.file.endswith("memory.log")


def test_trailing_commas_are_tolerated(tmp_path) -> None:
    path = _write(tmp_path / "config.json", '{"embedding": {"provider": "local", "model": "bge-small-en-v1.5",},}')
    assert load_plugin_config(path).embedding.model == "bge-small-en-v1.5"
    assert sanitize_json('[1, 2, ]') == "[1, 2]"


def test_invalid_shapes_fall_back_to_defaults(tmp_path) -> None:
    bad_json = _write(tmp_path / "a.json", "{not json")
    bad_provider = _write(tmp_path / "b.json", {"embedding": {"provider": "cohere", "model": "x"}})
    bad_model = _write(tmp_path / "c.json", {"embedding": {"provider": "local", "model": 42}})
    not_object = _write(tmp_path / "d.json", "[1, 2]")
    no_embedding = _write(tmp_path / "e.json", {"dataDir": "/x"})

    default = default_plugin_config()
    for path in (bad_json, bad_provider, bad_model, not_object, no_embedding):
        cfg = load_plugin_config(path)
        assert cfg.embedding == default.embedding
        assert cfg.data_dir is None


def test_data_dir_resolution(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(config_module.settings, "data_dir", "")
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    assert resolve_data_dir() == str(tmp_path / "project-memory")

    monkeypatch.setattr(config_module.settings, "data_dir", str(tmp_path / "explicit"))
    assert resolve_data_dir() == str(tmp_path / "explicit")


def test_project_id_resolution(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(config_module.settings, "project_id", "pinned")
    assert resolve_project_id(str(tmp_path)) == "pinned"

    monkeypatch.setattr(config_module.settings, "project_id", "")
    plain = tmp_path / "plain-dir"
    plain.mkdir()
    # Not a git checkout (tmp dirs never are): the directory name is used.
    assert resolve_project_id(str(plain)) == "plain-dir"
