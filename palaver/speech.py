"""Local speech providers: faster-whisper for STT, piper for TTS."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Optional

import numpy as np
from faster_whisper import WhisperModel

from palaver.audio import pcm16_to_float32, resample_linear
from palaver.config import STTConfig, TTSConfig
from palaver.errors import ProviderError
from palaver.interfaces import SpeechToText, TextToSpeech

WHISPER_RATE = 16000


# =========================
# STT
# =========================

class FasterWhisperSTT(SpeechToText):
    name = "faster-whisper"

    def __init__(self, cfg: STTConfig, logger: logging.Logger):
        self.logger = logger
        self.model_tag = cfg.model
        self.device = cfg.device
        self.compute_type = cfg.compute_type
        self.beam_size = cfg.beam_size
        self.language = cfg.language
        self.initial_prompt = cfg.initial_prompt
        self._whisper: Optional[WhisperModel] = None

        if self.device == "cuda":
            try:
                self._whisper = WhisperModel(self.model_tag, device="cuda", compute_type=self.compute_type)
                self.logger.info("stt_ready %s", json.dumps({
                    "engine": "whisper-cuda",
                    "model": self.model_tag,
                    "compute_type": self.compute_type
                }))
            except Exception as e:
                self.logger.warning("stt_cuda_failed %s", json.dumps({"error": str(e)}))
                self._init_cpu_whisper()
        else:
            self._init_cpu_whisper()

    def _init_cpu_whisper(self):
        """Fallback to CPU Whisper."""
        try:
            self._whisper = WhisperModel(self.model_tag, device="cpu", compute_type="int8")
        except Exception as e:
            raise ProviderError(self.name, f"cannot load model {self.model_tag!r}: {e}") from e
        self.logger.info("stt_ready %s", json.dumps({"engine": "whisper-cpu", "model": self.model_tag}))

    def transcribe(self, audio: np.ndarray, sample_rate: int, language: Optional[str] = None) -> str:
        """Transcribe 16-bit mono PCM at any sample rate."""
        if audio is None or len(audio) == 0:
            return ""

        t0 = time.time()
        audio_float = pcm16_to_float32(audio)
        if sample_rate != WHISPER_RATE:
            audio_float = resample_linear(audio_float, sample_rate, WHISPER_RATE)

        try:
            segments, info = self._whisper.transcribe(
                audio_float,
                beam_size=self.beam_size,
                language=language or self.language,
                initial_prompt=self.initial_prompt
            )
            text = " ".join(seg.text for seg in segments).strip()
        except Exception as e:
            raise ProviderError(self.name, str(e)) from e

        self.logger.info("stt_done %s", json.dumps({
            "engine": "whisper",
            "len": len(text),
            "lang": info.language if info else self.language,
            "ms": int((time.time() - t0) * 1000),
        }))
        return text


# =========================
# TTS
# =========================

def strip_markdown(text: str) -> str:
    """Remove markdown formatting for TTS."""
    # Remove bold/italic (**text** or *text*)
    text = re.sub(r'\*\*([^\*]+)\*\*', r'\1', text)
    text = re.sub(r'\*([^\*]+)\*', r'\1', text)
    # Remove inline code (`code`)
    text = re.sub(r'`([^`]+)`', r'\1', text)
    # Remove headers (# text)
    text = re.sub(r'^#{1,6}\s+', '', text, flags=re.MULTILINE)
    # Remove list markers (1. or - or *)
    text = re.sub(r'^\s*[\d\-\*]+\.?\s+', '', text, flags=re.MULTILINE)
    # Remove links [text](url)
    text = re.sub(r'\[([^\]]+)\]\([^\)]+\)', r'\1', text)
    return text.strip()


class PiperTTS(TextToSpeech):
    """Runs the piper binary and returns the WAV it writes."""

    name = "piper"

    def __init__(self, cfg: TTSConfig, logger: logging.Logger):
        self.logger = logger
        self.piper_bin = shutil.which(cfg.piper_bin) or cfg.piper_bin
        self.piper_voice = str(Path(cfg.piper_voice).expanduser()) if cfg.piper_voice else None
        self.use_cuda = cfg.use_cuda
        self.timeout = cfg.timeout_s

        if not self.piper_bin or not os.path.exists(self.piper_bin):
            self.logger.warning("piper_not_found %s", json.dumps({"bin": self.piper_bin}))
        if not self.piper_voice or not os.path.exists(self.piper_voice):
            self.logger.warning("piper_voice_not_found %s", json.dumps({"voice": self.piper_voice}))

    def synthesize(self, text: str) -> bytes:
        text = strip_markdown(text)
        if not text:
            return b""
        if not self.piper_voice:
            raise ProviderError(self.name, "no voice model configured")

        tmp_wav = tempfile.NamedTemporaryFile(suffix=".wav", delete=False)
        tmp_wav.close()

        cmd = [self.piper_bin, "-m", self.piper_voice, "-f", tmp_wav.name]
        if self.use_cuda:
            cmd.insert(1, "--cuda")

        t_synth = time.time()
        try:
            proc = subprocess.run(
                cmd,
                input=text,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout,
            )
            if proc.returncode != 0:
                raise ProviderError(self.name, f"exit {proc.returncode}: {proc.stderr.strip()[-200:]}")
            wav = Path(tmp_wav.name).read_bytes()
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProviderError(self.name, str(e)) from e
        finally:
            try:
                os.unlink(tmp_wav.name)
            except FileNotFoundError:
                pass

        self.logger.info("tts_profile %s", json.dumps({
            "chars": len(text),
            "synth_ms": int((time.time() - t_synth) * 1000),
            "bytes": len(wav),
        }))
        return wav
