"""
Tests for deepctx.config — defaults, file loading, validation, dotted keys
and project layout helpers.
"""

import json
import os

import pytest

from deepctx.config import (
    CONFIG_FILE,
    DC_DIR,
    DCIGNORE,
    EmbeddingsConfig,
    MemoryConfig,
    RetrievalConfig,
    config_path,
    find_project_root,
    get_config_value,
    init_project,
    is_project_disabled,
    load_config,
    memory_db_path,
    save_config,
    set_config_value,
)
from deepctx.errors import ConfigurationError, ValidationError


class TestDefaults:
    def test_thresholds(self):
        r = RetrievalConfig()
        assert r.default_min_similarity == 0.3
        assert r.decision_min_similarity == 0.4
        assert r.heuristic_min_similarity == 0.35
        assert r.search_min_similarity == 0.2
        assert r.friction_match_threshold == 0.55
        assert r.max_decisions == 5
        assert r.max_heuristics == 3

    def test_sections(self):
        cfg = MemoryConfig()
        assert cfg.embeddings.provider == "simple"
        assert cfg.store.db_path == ".dc/memory.db"
        assert cfg.friction.decay_half_life_days == 30.0
        assert cfg.context.conversation_tokens == 3000
        assert cfg.policy.max_content_length == 2000

    def test_defaults_validate(self):
        assert MemoryConfig().validate() == []


class TestLoadConfig:
    def test_none_path(self):
        assert load_config(None) == MemoryConfig()

    def test_missing_file(self, tmp_path):
        assert load_config(tmp_path / "nope.json") == MemoryConfig()

    def test_corrupt_file_falls_back(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text("{not json", encoding="utf-8")
        assert load_config(p) == MemoryConfig()

    def test_unknown_field_falls_back(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text(json.dumps({"retrieval": {"bogus": 1}}), encoding="utf-8")
        assert load_config(p) == MemoryConfig()

    def test_partial_file(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text(json.dumps({"retrieval": {"decision_min_similarity": 0.6}}),
                     encoding="utf-8")
        cfg = load_config(p)
        assert cfg.retrieval.decision_min_similarity == 0.6
        assert cfg.retrieval.heuristic_min_similarity == 0.35
        assert cfg.embeddings.provider == "simple"

    def test_strict_rejects_out_of_range(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text(json.dumps({"retrieval": {"decision_min_similarity": 3.0}}),
                     encoding="utf-8")
        assert load_config(p).retrieval.decision_min_similarity == 3.0
        with pytest.raises(ValidationError):
            load_config(p, strict=True)

    def test_save_load_roundtrip(self, tmp_path):
        cfg = MemoryConfig()
        cfg.embeddings.provider = "ollama"
        cfg.friction.boost_delta = 1.0
        p = tmp_path / "config.json"
        save_config(cfg, p)
        assert load_config(p) == cfg

    def test_api_key_never_saved(self, tmp_path):
        cfg = MemoryConfig()
        cfg.embeddings.openai_api_key = "sk-secret"
        p = tmp_path / "config.json"
        save_config(cfg, p)
        assert "sk-secret" not in p.read_text(encoding="utf-8")

    def test_saved_file_private(self, tmp_path):
        p = tmp_path / "config.json"
        save_config(MemoryConfig(), p)
        assert (os.stat(p).st_mode & 0o777) == 0o600


class TestValidation:
    def test_unknown_provider(self):
        assert MemoryConfig(embeddings=EmbeddingsConfig(provider="word2vec")).validate()

    def test_int_accepted_for_float(self):
        assert RetrievalConfig(decision_min_similarity=0).validate() == []

    def test_wrong_type(self):
        errors = RetrievalConfig(max_decisions="5").validate()
        assert any("max_decisions" in e for e in errors)

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        assert EmbeddingsConfig().resolved_api_key() == "env-key"
        assert EmbeddingsConfig(openai_api_key="explicit").resolved_api_key() == "explicit"


class TestDottedKeys:
    def test_get(self):
        assert get_config_value(MemoryConfig(), "retrieval.max_heuristics") == 3

    def test_get_invalid(self):
        with pytest.raises(ConfigurationError):
            get_config_value(MemoryConfig(), "retrieval.nope")

    def test_set_float(self):
        cfg = set_config_value(MemoryConfig(), "retrieval.decision_min_similarity", "0.5")
        assert cfg.retrieval.decision_min_similarity == 0.5

    def test_set_bool(self):
        cfg = set_config_value(MemoryConfig(), "store.wal_mode", "false")
        assert cfg.store.wal_mode is False

    def test_set_optional_int(self):
        cfg = set_config_value(MemoryConfig(), "embeddings.dimensions", "256")
        assert cfg.embeddings.dimensions == 256

    def test_set_leaves_original(self):
        original = MemoryConfig()
        set_config_value(original, "embeddings.provider", "openai")
        assert original.embeddings.provider == "simple"

    def test_set_out_of_range(self):
        with pytest.raises(ValidationError):
            set_config_value(MemoryConfig(), "friction.match_limit", "0")

    @pytest.mark.parametrize("key", ["nope", "retrieval", "retrieval.nope", "a.b.c"])
    def test_set_invalid_key(self, key):
        with pytest.raises(ConfigurationError):
            set_config_value(MemoryConfig(), key, "1")


class TestProjectLayout:
    def test_init_project(self, tmp_path):
        dc = init_project(tmp_path)
        assert dc == tmp_path / DC_DIR
        assert (dc / CONFIG_FILE).exists()
        assert "memory.db" in (dc / ".gitignore").read_text(encoding="utf-8")
        assert load_config(config_path(tmp_path), strict=True) == MemoryConfig()

    def test_init_twice(self, tmp_path):
        init_project(tmp_path)
        with pytest.raises(ConfigurationError):
            init_project(tmp_path)
        init_project(tmp_path, force=True)

    def test_find_project_root_walks_up(self, tmp_path):
        init_project(tmp_path)
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == tmp_path.resolve()

    def test_find_project_root_none(self, tmp_path):
        nested = tmp_path / "plain"
        nested.mkdir()
        assert find_project_root(nested) is None

    def test_paths(self, tmp_path):
        assert memory_db_path(tmp_path) == tmp_path / ".dc" / "memory.db"
        assert config_path(tmp_path) == tmp_path / ".dc" / "config.json"

    def test_dcignore(self, tmp_path):
        assert is_project_disabled(tmp_path) is False
        (tmp_path / DCIGNORE).write_text("", encoding="utf-8")
        assert is_project_disabled(tmp_path) is True
