"""
Local wake word detection with the openWakeWord ONNX model cascade.

Stages, per 80 ms frame of 16 kHz audio:

1. melspectrogram model -> 5 x 32 mel rows, normalized as ``value / 10 + 2``
2. embedding model over a sliding 76-row mel window, advanced by 8 rows
3. one scorer per keyword over its last W embeddings (W from the model, default 16)
4. recurrent Silero VAD on the same frame, gating detections

A keyword fires when its score exceeds ``1 - sensitivity`` while the VAD
reports voice. Inference sessions are loaded once in WakeWordModels and shared
read-only; everything that changes per frame lives in a CascadeState owned by
one WakeWordCascade.

CascadeState is mutated in place. A WakeWordCascade is NOT reentrant: callers
must not overlap detect() calls on the same instance. Use one instance per
concurrent caller or serialize the calls.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, Optional, Union

import numpy as np
import onnxruntime as ort

from palaver.audio import pcm16_to_float32, resample_linear
from palaver.config import WakeConfig, log_event
from palaver.errors import ModelLoadError

TARGET_SAMPLE_RATE = 16000
FRAME_SIZE = 1280  # 80 ms
MEL_FRAMES_PER_CHUNK = 5
MEL_BANDS = 32
MEL_WINDOW = 76
MEL_STEP = 8
EMBEDDING_SIZE = 96
DEFAULT_EMBEDDING_WINDOW = 16
SCORE_HISTORY = 50
VAD_STATE_SHAPE = (2, 1, 64)
VAD_THRESHOLD = 0.5

MELSPEC_FILE = "melspectrogram.onnx"
EMBEDDING_FILE = "embedding_model.onnx"
VAD_FILE = "silero_vad.onnx"
CORE_MODEL_FILES = (MELSPEC_FILE, EMBEDDING_FILE, VAD_FILE)

KEYWORD_MODEL_MAP = {
    "alexa": "alexa_v0.1.onnx",
    "hey_jarvis": "hey_jarvis_v0.1.onnx",
    "hey_mycroft": "hey_mycroft_v0.1.onnx",
    "hey_rhasspy": "hey_rhasspy_v0.1.onnx",
    "timer": "timer_v0.1.onnx",
    "weather": "weather_v0.1.onnx",
}

SessionFactory = Callable[[Path], Any]


@dataclass
class WakeWordResult:
    detected: bool = False
    confidence: float = 0.0
    keyword: Optional[str] = None


def resolve_keyword_model(keyword: str) -> str:
    """Map a keyword to its model file name."""
    if "/" in keyword or "\\" in keyword or keyword.endswith(".onnx"):
        return keyword
    return KEYWORD_MODEL_MAP.get(keyword.lower(), f"{keyword}.onnx")


def infer_window_size(session: Any) -> int:
    """Embedding window expected by a scorer: input shape is [1, W, 96]."""
    try:
        shape = session.get_inputs()[0].shape
    except (AttributeError, IndexError):
        return DEFAULT_EMBEDDING_WINDOW
    if len(shape) >= 2 and isinstance(shape[1], int) and shape[1] > 0:
        return shape[1]
    return DEFAULT_EMBEDDING_WINDOW


def onnx_session(path: Path) -> ort.InferenceSession:
    opts = ort.SessionOptions()
    opts.inter_op_num_threads = 1
    opts.intra_op_num_threads = 1
    return ort.InferenceSession(str(path), sess_options=opts, providers=["CPUExecutionProvider"])


def _run_single(session: Any, value: np.ndarray) -> np.ndarray:
    feeds = {session.get_inputs()[0].name: value}
    return np.asarray(session.run(None, feeds)[0])


# =========================
# Shared models
# =========================

@dataclass
class KeywordModel:
    name: str
    session: Any
    window_size: int


class WakeWordModels:
    """Inference sessions for the cascade, loaded once and reused read-only."""

    def __init__(self, melspec: Any, embedding: Any, vad: Any, keywords: Dict[str, KeywordModel], logger: logging.Logger):
        self.melspec = melspec
        self.embedding = embedding
        self.vad = vad
        self.keywords = keywords
        self.logger = logger

    @property
    def loaded(self) -> bool:
        return self.melspec is not None

    @classmethod
    def load(
        cls,
        cfg: WakeConfig,
        logger: logging.Logger,
        session_factory: SessionFactory = onnx_session,
    ) -> "WakeWordModels":
        """Load every model file. Missing or unreadable files raise ModelLoadError."""
        model_dir = Path(cfg.model_path).expanduser()
        log_event(logger, "wakeword_loading", {"model_dir": str(model_dir), "keywords": list(cfg.keywords)})

        def _load(file_name: str) -> Any:
            path = model_dir / file_name
            if not path.exists():
                raise ModelLoadError(
                    f"model not found: {path}. Built-in keywords: {', '.join(KEYWORD_MODEL_MAP)}"
                )
            try:
                return session_factory(path)
            except Exception as e:
                raise ModelLoadError(f"cannot load {path}: {e}") from e

        melspec = _load(MELSPEC_FILE)
        embedding = _load(EMBEDDING_FILE)
        vad = _load(VAD_FILE)

        keywords: Dict[str, KeywordModel] = {}
        for keyword in cfg.keywords:
            session = _load(resolve_keyword_model(keyword))
            keywords[keyword] = KeywordModel(keyword, session, infer_window_size(session))
            logger.debug("wakeword_keyword_loaded %s", json.dumps({
                "keyword": keyword, "window": keywords[keyword].window_size
            }))

        log_event(logger, "wakeword_ready", {"keywords": list(keywords)})
        return cls(melspec, embedding, vad, keywords, logger)

    @staticmethod
    def is_available(cfg: WakeConfig) -> bool:
        model_dir = Path(cfg.model_path).expanduser()
        required = list(CORE_MODEL_FILES) + [resolve_keyword_model(k) for k in cfg.keywords]
        return all((model_dir / name).exists() for name in required)

    def dispose(self) -> None:
        """Release every inference session."""
        self.melspec = None
        self.embedding = None
        self.vad = None
        self.keywords.clear()
        self.logger.info("wakeword_disposed %s", json.dumps({}))


def fetch_models(model_dir: Union[str, Path], keywords: Iterable[str], logger: logging.Logger) -> None:
    """Download the feature, VAD and built-in keyword models into ``model_dir``."""
    from openwakeword.utils import download_models

    target = Path(model_dir).expanduser()
    target.mkdir(parents=True, exist_ok=True)
    names = [k for k in keywords if k.lower() in KEYWORD_MODEL_MAP]
    log_event(logger, "wakeword_download", {"target": str(target), "models": names})
    download_models(model_names=names, target_directory=str(target))


# =========================
# Per-caller state
# =========================

@dataclass
class CascadeState:
    """Everything the cascade mutates while scoring frames."""

    windows: Dict[str, int]
    mel_buffer: np.ndarray = field(default_factory=lambda: np.zeros((0, MEL_BANDS), dtype=np.float32))
    histories: Dict[str, np.ndarray] = field(default_factory=dict)
    scores: Dict[str, Deque[float]] = field(default_factory=dict)
    vad_h: np.ndarray = field(default_factory=lambda: np.zeros(VAD_STATE_SHAPE, dtype=np.float32))
    vad_c: np.ndarray = field(default_factory=lambda: np.zeros(VAD_STATE_SHAPE, dtype=np.float32))
    frames_processed: int = 0
    embeddings_computed: int = 0

    def __post_init__(self):
        if not self.histories:
            self.reset()

    def reset(self) -> None:
        self.mel_buffer = np.zeros((0, MEL_BANDS), dtype=np.float32)
        self.histories = {
            kw: np.zeros((w, EMBEDDING_SIZE), dtype=np.float32) for kw, w in self.windows.items()
        }
        self.scores = {kw: deque([0.0] * SCORE_HISTORY, maxlen=SCORE_HISTORY) for kw in self.windows}
        self.vad_h = np.zeros(VAD_STATE_SHAPE, dtype=np.float32)
        self.vad_c = np.zeros(VAD_STATE_SHAPE, dtype=np.float32)
        self.frames_processed = 0
        self.embeddings_computed = 0


# =========================
# Cascade
# =========================

class WakeWordCascade:
    """Scores raw audio for the configured keywords. Not reentrant, see module docs."""

    name = "openwakeword"

    def __init__(
        self,
        cfg: WakeConfig,
        logger: logging.Logger,
        models: Optional[WakeWordModels] = None,
        session_factory: SessionFactory = onnx_session,
    ):
        self.cfg = cfg
        self.logger = logger
        self.sensitivity = cfg.sensitivity
        self.models = models
        self._owns_models = models is None
        self._session_factory = session_factory
        self.state: Optional[CascadeState] = None

    @property
    def initialized(self) -> bool:
        return self.state is not None and self.models is not None and self.models.loaded

    def initialize(self) -> None:
        """Load models when not shared in, then start a fresh detection session."""
        if self.models is None:
            self.models = WakeWordModels.load(self.cfg, self.logger, self._session_factory)
            self._owns_models = True
        self.reset()

    def reset(self) -> None:
        windows = {kw: m.window_size for kw, m in self.models.keywords.items()}
        self.state = CascadeState(windows=windows)

    def is_available(self) -> bool:
        return WakeWordModels.is_available(self.cfg)

    def dispose(self) -> None:
        if self.models is not None and self._owns_models:
            self.models.dispose()
        self.models = None
        self.state = None

    def detect(self, pcm: Union[bytes, np.ndarray], sample_rate: int) -> WakeWordResult:
        """Best detection over all 80 ms frames of a 16-bit PCM buffer."""
        if not self.initialized:
            raise RuntimeError("wake word cascade not initialized, call initialize() first")

        samples = pcm16_to_float32(pcm)
        if sample_rate != TARGET_SAMPLE_RATE:
            samples = resample_linear(samples, sample_rate, TARGET_SAMPLE_RATE)

        best = WakeWordResult()
        for offset in range(0, len(samples) - FRAME_SIZE + 1, FRAME_SIZE):
            result = self._process_frame(samples[offset:offset + FRAME_SIZE])
            if result.confidence > best.confidence:
                best = result

        self.logger.debug("wakeword_result %s", json.dumps({
            "detected": best.detected,
            "confidence": round(best.confidence, 4),
            "keyword": best.keyword,
        }))
        return best

    def _process_frame(self, frame: np.ndarray) -> WakeWordResult:
        state = self.state
        models = self.models
        state.frames_processed += 1

        vad_active = self._run_vad(frame)

        mel = _run_single(models.melspec, frame.reshape(1, FRAME_SIZE).astype(np.float32))
        mel = mel.reshape(-1, MEL_BANDS).astype(np.float32) / 10.0 + 2.0
        state.mel_buffer = np.concatenate([state.mel_buffer, mel[:MEL_FRAMES_PER_CHUNK]])

        best = WakeWordResult()
        threshold = 1.0 - self.sensitivity

        while len(state.mel_buffer) >= MEL_WINDOW:
            window = state.mel_buffer[:MEL_WINDOW].reshape(1, MEL_WINDOW, MEL_BANDS, 1)
            embedding = _run_single(models.embedding, window).reshape(-1)[:EMBEDDING_SIZE]
            state.embeddings_computed += 1

            for keyword, model in models.keywords.items():
                history = state.histories[keyword]
                history[:-1] = history[1:]
                history[-1] = embedding

                score = float(_run_single(model.session, history.reshape(1, model.window_size, EMBEDDING_SIZE)).reshape(-1)[0])
                state.scores[keyword].append(score)

                if score > threshold and vad_active and score > best.confidence:
                    best = WakeWordResult(True, score, keyword)

            state.mel_buffer = state.mel_buffer[MEL_STEP:]

        return best

    def _run_vad(self, frame: np.ndarray) -> bool:
        state = self.state
        vad = self.models.vad
        try:
            feeds = {
                "input": frame.reshape(1, -1).astype(np.float32),
                "sr": np.array(TARGET_SAMPLE_RATE, dtype=np.int64),
                "h": state.vad_h,
                "c": state.vad_c,
            }
            names = [o.name for o in vad.get_outputs()]
            outputs = dict(zip(names, vad.run(None, feeds)))
            state.vad_h = np.asarray(outputs["hn"], dtype=np.float32)
            state.vad_c = np.asarray(outputs["cn"], dtype=np.float32)
            confidence = float(np.asarray(outputs["output"]).reshape(-1)[0])
        except Exception as e:
            # Fail open: never silently drop audio because the gate broke
            self.logger.debug("wakeword_vad_failed %s", json.dumps({"error": str(e)}))
            return True
        return confidence > VAD_THRESHOLD
