"""
Palaver configuration and logging setup.

One validated EngineConfig is built from the YAML file before any component
starts. Every section is a frozen dataclass; unknown keys and invalid
combinations raise ConfigError up front instead of being defaulted at the
point of use.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from palaver.errors import ConfigError

CONFIG_PATH = Path(os.environ.get("PALAVER_CONFIG", "~/.config/palaver/palaver.yaml")).expanduser()


class VoiceMode(str, Enum):
    """Channel operating mode."""

    NORMAL = "normal"
    SILENT = "silent"  # no earcons
    FREE = "free"  # no wake word or trigger gating

    @classmethod
    def parse(cls, value: Any) -> "VoiceMode":
        try:
            return cls(value)
        except ValueError:
            raise ConfigError(f"unknown mode {value!r}, expected one of {[m.value for m in cls]}") from None


# =========================
# Sections
# =========================

@dataclass(frozen=True)
class AudioConfig:
    sample_rate: int = 48000
    channels: int = 1
    chunk_ms: int = 100
    loudness: str = "mean"
    input_device: Optional[int] = None


@dataclass(frozen=True)
class VADConfig:
    volume_threshold_db: float = -50.0
    silence_duration_ms: int = 1500
    min_speech_duration_ms: int = 500
    max_utterance_ms: int = 30000  # 0 disables the cap
    device_retry_s: float = 0.5


@dataclass(frozen=True)
class WakeConfig:
    provider: str = "none"
    model_path: str = "~/.local/share/palaver/models/openwakeword"
    keywords: Tuple[str, ...] = ("hey_jarvis",)
    sensitivity: float = 0.5


@dataclass(frozen=True)
class TriggerConfig:
    phrases: Tuple[str, ...] = ("hey bot", "ok bot")
    ignore_phrases: Tuple[str, ...] = ("thank you.", "bye.", "thanks for watching.")
    stop_phrases: Tuple[str, ...] = ("stop", "shut up", "be quiet", "silence")
    min_transcript_chars: int = 2


@dataclass(frozen=True)
class InterruptConfig:
    # latest speech wins per user
    cancel_own_request: bool = True
    # a new speaker stops another user's playing response
    displace_other_speaker: bool = True


@dataclass(frozen=True)
class ResponseConfig:
    timeout_s: float = 30.0
    earcon: bool = True
    priority: int = 0


@dataclass(frozen=True)
class CallConfig:
    target_user_id: Optional[str] = None
    connect_timeout_s: float = 20.0
    retry_delay_s: float = 1.0
    language: Optional[str] = None  # falls back to stt.language
    hallucination_phrases: Tuple[str, ...] = (
        "untertitel der amara.org-community",
        "untertitel von der amara.org",
        "untertitelung",
        "subtitles by",
        "thank you for watching",
        "thanks for watching",
        "please subscribe",
        "like and subscribe",
        "danke fürs zuschauen",
        "vielen dank für ihre aufmerksamkeit",
        "www.",
        "http",
        "copyright",
        "[music]",
        "♪",
        "♫",
    )


@dataclass(frozen=True)
class AccessConfig:
    owner_only: bool = False
    owner_id: Optional[str] = None
    allowed_users: Tuple[str, ...] = ()
    blocked_users: Tuple[str, ...] = ()

    def is_allowed(self, user_id: str, channel_owner_id: Optional[str] = None) -> bool:
        """Blocklist first, then owner-only, then allowlist; everyone else is allowed."""
        if user_id in self.blocked_users:
            return False
        if self.owner_only:
            return (self.owner_id or channel_owner_id) == user_id
        if self.allowed_users:
            return user_id in self.allowed_users
        return True


@dataclass(frozen=True)
class STTConfig:
    model: str = "small"
    device: str = "cuda"
    compute_type: str = "int8_float16"
    beam_size: int = 1
    language: Optional[str] = "en"
    initial_prompt: Optional[str] = None


@dataclass(frozen=True)
class TTSConfig:
    piper_bin: str = "piper"
    piper_voice: Optional[str] = None
    use_cuda: bool = False
    timeout_s: float = 30.0


@dataclass(frozen=True)
class LLMConfig:
    model: str = "llama3.2:3b"
    host: str = "http://127.0.0.1:11434"
    timeout_s: float = 20.0
    system_prompt: str = ""


@dataclass(frozen=True)
class MemoryConfig:
    max_messages: int = 10
    ttl_minutes: float = 30.0


@dataclass(frozen=True)
class LoggingConfig:
    debug: bool = False
    log_dir: str = "~/.local/state/palaver/logs"


_SECTIONS = {
    "audio": AudioConfig,
    "vad": VADConfig,
    "wake": WakeConfig,
    "triggers": TriggerConfig,
    "interrupt": InterruptConfig,
    "response": ResponseConfig,
    "call": CallConfig,
    "access": AccessConfig,
    "stt": STTConfig,
    "tts": TTSConfig,
    "llm": LLMConfig,
    "memory": MemoryConfig,
    "logging": LoggingConfig,
}


def _build_section(name: str, cls, raw: Any):
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"section {name!r} must be a mapping, got {type(raw).__name__}")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"unknown keys in {name!r}: {', '.join(unknown)}")

    values = {}
    for key, value in raw.items():
        if isinstance(value, list):
            value = tuple(value)
        values[key] = value
    return cls(**values)


@dataclass(frozen=True)
class EngineConfig:
    """The single validated configuration structure."""

    audio: AudioConfig = field(default_factory=AudioConfig)
    vad: VADConfig = field(default_factory=VADConfig)
    wake: WakeConfig = field(default_factory=WakeConfig)
    triggers: TriggerConfig = field(default_factory=TriggerConfig)
    interrupt: InterruptConfig = field(default_factory=InterruptConfig)
    response: ResponseConfig = field(default_factory=ResponseConfig)
    call: CallConfig = field(default_factory=CallConfig)
    access: AccessConfig = field(default_factory=AccessConfig)
    stt: STTConfig = field(default_factory=STTConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    mode: VoiceMode = VoiceMode.NORMAL

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "EngineConfig":
        raw = dict(raw or {})
        raw.pop("version", None)
        mode = VoiceMode.parse(raw.pop("mode", VoiceMode.NORMAL.value))

        unknown = sorted(set(raw) - set(_SECTIONS))
        if unknown:
            raise ConfigError(f"unknown config sections: {', '.join(unknown)}")

        sections = {name: _build_section(name, section_cls, raw.get(name)) for name, section_cls in _SECTIONS.items()}
        cfg = cls(mode=mode, **sections)
        cfg.validate()
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"version": "1", "mode": self.mode.value}
        for name in _SECTIONS:
            section = asdict(getattr(self, name))
            out[name] = {k: list(v) if isinstance(v, tuple) else v for k, v in section.items()}
        return out

    def has_gate(self, mode: VoiceMode) -> bool:
        """Whether utterances in ``mode`` can ever be addressed to the assistant."""
        return mode is VoiceMode.FREE or self.wake.provider != "none" or bool(self.triggers.phrases)

    def validate(self) -> None:
        """Reject invalid values and combinations."""
        errors = []

        if self.audio.sample_rate <= 0:
            errors.append("audio.sample_rate must be positive")
        if self.audio.channels != 1:
            errors.append("audio.channels must be 1 (mono)")
        if self.audio.chunk_ms <= 0:
            errors.append("audio.chunk_ms must be positive")
        if self.audio.loudness not in ("mean", "peak"):
            errors.append("audio.loudness must be 'mean' or 'peak'")

        if self.vad.silence_duration_ms <= 0:
            errors.append("vad.silence_duration_ms must be positive")
        if self.vad.min_speech_duration_ms < 0:
            errors.append("vad.min_speech_duration_ms must not be negative")
        if self.vad.max_utterance_ms < 0:
            errors.append("vad.max_utterance_ms must not be negative")
        if 0 < self.vad.max_utterance_ms < self.vad.min_speech_duration_ms:
            errors.append("vad.max_utterance_ms is shorter than vad.min_speech_duration_ms")
        if self.vad.device_retry_s < 0:
            errors.append("vad.device_retry_s must not be negative")

        if self.wake.provider not in ("none", "openwakeword"):
            errors.append(f"wake.provider {self.wake.provider!r} is not supported")
        if not 0.0 <= self.wake.sensitivity <= 1.0:
            errors.append("wake.sensitivity must be within [0, 1]")
        if self.wake.provider == "openwakeword" and not self.wake.keywords:
            errors.append("wake.keywords must not be empty when a wake word provider is configured")

        if self.triggers.min_transcript_chars < 0:
            errors.append("triggers.min_transcript_chars must not be negative")
        if not self.has_gate(self.mode):
            errors.append(f"{self.mode.value} mode without a wake word provider needs at least one trigger phrase")

        if self.response.timeout_s <= 0:
            errors.append("response.timeout_s must be positive")

        if self.call.connect_timeout_s <= 0:
            errors.append("call.connect_timeout_s must be positive")
        if self.call.retry_delay_s < 0:
            errors.append("call.retry_delay_s must not be negative")

        if self.memory.max_messages < 1:
            errors.append("memory.max_messages must be at least 1")
        if self.memory.ttl_minutes <= 0:
            errors.append("memory.ttl_minutes must be positive")

        if errors:
            raise ConfigError("; ".join(errors))


# =========================
# Loading
# =========================

def load_config(path: Optional[Path] = None) -> EngineConfig:
    """Load and validate the YAML config; write the defaults out when missing."""
    path = Path(path or CONFIG_PATH).expanduser()
    if not path.exists():
        default_cfg = EngineConfig()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(default_cfg.to_dict(), f, sort_keys=False, allow_unicode=True)
        return default_cfg

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"cannot parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at top level")
    return EngineConfig.from_dict(raw)


def ensure_logger(log_cfg: LoggingConfig, name: str = "palaver") -> Tuple[logging.Logger, str]:
    """Set up file + stdout logger."""
    log_dir = Path(log_cfg.log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d")
    log_path = log_dir / f"{name}-{ts}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if log_cfg.debug else logging.INFO)
    logger.handlers.clear()

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    fh.setFormatter(fmt)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger, str(log_path)


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def log_event(logger: logging.Logger, kind: str, payload: Dict[str, Any], level: int = logging.INFO):
    try:
        logger.log(level, "%s %s", kind, json.dumps(payload, default=str))
    except (TypeError, ValueError):
        logger.log(level, "%s %s", kind, str(payload))
