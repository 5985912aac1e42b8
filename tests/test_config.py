"""Tests for EngineConfig parsing, validation and YAML loading."""

from __future__ import annotations

import logging

import pytest
import yaml

from palaver.config import (
    AccessConfig,
    EngineConfig,
    VoiceMode,
    ensure_logger,
    load_config,
    LoggingConfig,
)
from palaver.errors import ConfigError


class TestEngineConfig:
    def test_defaults_are_valid(self):
        cfg = EngineConfig()
        cfg.validate()
        assert cfg.mode is VoiceMode.NORMAL
        assert cfg.vad.silence_duration_ms == 1500
        assert cfg.vad.min_speech_duration_ms == 500
        assert cfg.vad.volume_threshold_db == -50.0
        assert cfg.call.connect_timeout_s == 20.0
        assert cfg.memory.max_messages == 10

    def test_lists_become_tuples(self):
        cfg = EngineConfig.from_dict({"triggers": {"phrases": ["hey bot"]}})
        assert cfg.triggers.phrases == ("hey bot",)

    def test_mode_parsed(self):
        cfg = EngineConfig.from_dict({"mode": "free"})
        assert cfg.mode is VoiceMode.FREE

    def test_unknown_mode_rejected(self):
        with pytest.raises(ConfigError):
            EngineConfig.from_dict({"mode": "loud"})

    def test_unknown_section_rejected(self):
        with pytest.raises(ConfigError, match="unknown config sections"):
            EngineConfig.from_dict({"bogus": {}})

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="unknown keys"):
            EngineConfig.from_dict({"vad": {"silence_ms": 10}})

    def test_sensitivity_out_of_range(self):
        with pytest.raises(ConfigError, match="sensitivity"):
            EngineConfig.from_dict({"wake": {"sensitivity": 1.5}})

    def test_empty_keywords_with_provider(self):
        with pytest.raises(ConfigError, match="keywords"):
            EngineConfig.from_dict({"wake": {"provider": "openwakeword", "keywords": []}})

    def test_non_positive_timing(self):
        with pytest.raises(ConfigError) as exc:
            EngineConfig.from_dict({
                "vad": {"silence_duration_ms": 0},
                "response": {"timeout_s": 0},
            })
        assert "silence_duration_ms" in str(exc.value)
        assert "timeout_s" in str(exc.value)

    def test_normal_mode_needs_a_gate(self):
        with pytest.raises(ConfigError, match="trigger phrase"):
            EngineConfig.from_dict({"triggers": {"phrases": []}})

    def test_silent_mode_needs_a_gate(self):
        with pytest.raises(ConfigError, match="silent mode"):
            EngineConfig.from_dict({"mode": "silent", "triggers": {"phrases": []}})

    def test_free_mode_needs_no_gate(self):
        cfg = EngineConfig.from_dict({"mode": "free", "triggers": {"phrases": []}})
        assert cfg.triggers.phrases == ()
        assert cfg.has_gate(VoiceMode.FREE)
        assert not cfg.has_gate(VoiceMode.NORMAL)
        assert not cfg.has_gate(VoiceMode.SILENT)

    def test_round_trip_dict(self):
        cfg = EngineConfig.from_dict({"mode": "silent", "audio": {"chunk_ms": 50}})
        again = EngineConfig.from_dict(cfg.to_dict())
        assert again == cfg


class TestAccess:
    def test_blocked_wins(self):
        access = AccessConfig(blocked_users=("u1",), allowed_users=("u1",))
        assert not access.is_allowed("u1")

    def test_owner_only(self):
        access = AccessConfig(owner_only=True)
        assert access.is_allowed("owner", channel_owner_id="owner")
        assert not access.is_allowed("guest", channel_owner_id="owner")

    def test_explicit_owner_overrides_channel_owner(self):
        access = AccessConfig(owner_only=True, owner_id="me")
        assert access.is_allowed("me", channel_owner_id="owner")
        assert not access.is_allowed("owner", channel_owner_id="owner")

    def test_allow_list(self):
        access = AccessConfig(allowed_users=("a",))
        assert access.is_allowed("a")
        assert not access.is_allowed("b")

    def test_open_by_default(self):
        assert AccessConfig().is_allowed("anyone")


class TestLoadConfig:
    def test_missing_file_writes_defaults(self, tmp_path):
        path = tmp_path / "palaver.yaml"
        cfg = load_config(path)
        assert path.exists()
        assert cfg == EngineConfig()
        written = yaml.safe_load(path.read_text())
        assert written["vad"]["silence_duration_ms"] == 1500

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "palaver.yaml"
        path.write_text("mode: silent\nvad:\n  volume_threshold_db: -40\n")
        cfg = load_config(path)
        assert cfg.mode is VoiceMode.SILENT
        assert cfg.vad.volume_threshold_db == -40

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "palaver.yaml"
        path.write_text("vad: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "palaver.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_config(path)


def test_ensure_logger_writes_file(tmp_path):
    logger, log_path = ensure_logger(LoggingConfig(debug=True, log_dir=str(tmp_path)), name="palaver_test")
    logger.info("hello %s", "{}")
    for handler in logger.handlers:
        handler.flush()
    assert logger.level == logging.DEBUG
    assert "hello" in open(log_path, encoding="utf-8").read()
