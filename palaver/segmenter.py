"""
Utterance segmentation by voice-activity timing.

A chunk is speech when its loudness is above the configured threshold. Speech
is buffered; once speech was seen, quiet chunks are buffered too (brief
pauses) until the accumulated silence reaches ``silence_duration_ms``, which
closes the segment. Quiet chunks before any speech are dropped. A closed
segment whose voiced duration is below ``min_speech_duration_ms`` is
discarded as a noise burst.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, List, Optional

import numpy as np

from palaver.audio import AudioChunk, AudioChunker, Utterance
from palaver.config import VADConfig
from palaver.errors import DeviceError


class UtteranceSegmenter:
    """Online segmenter for one speaker. Not shared between speakers."""

    def __init__(self, cfg: VADConfig, logger: logging.Logger, min_speech_ms: Optional[float] = None):
        self.volume_threshold_db = cfg.volume_threshold_db
        self.silence_duration_ms = cfg.silence_duration_ms
        self.min_speech_ms = cfg.min_speech_duration_ms if min_speech_ms is None else min_speech_ms
        self.max_utterance_ms = cfg.max_utterance_ms
        self.device_retry_s = cfg.device_retry_s
        self.logger = logger
        self.reset()

    def reset(self):
        self._chunks: List[AudioChunk] = []
        self._speech_detected = False
        self._silence_ms = 0.0
        self._speech_ms = 0.0
        self._total_ms = 0.0
        self._closed = False

    @property
    def speech_detected(self) -> bool:
        return self._speech_detected

    def is_speech(self, loudness_db: float) -> bool:
        return loudness_db > self.volume_threshold_db

    def push(self, chunk: AudioChunk) -> bool:
        """Feed one chunk. Returns True once the current segment is closed."""
        if self._closed:
            return True

        duration = chunk.duration_ms
        if self.is_speech(chunk.loudness_db):
            self._chunks.append(chunk)
            self._speech_detected = True
            self._silence_ms = 0.0
            self._speech_ms += duration
            self._total_ms += duration
        elif self._speech_detected:
            self._silence_ms += duration
            if self._silence_ms >= self.silence_duration_ms:
                self._closed = True
                return True
            # Keep the chunk in case speech resumes
            self._chunks.append(chunk)
            self._total_ms += duration

        if self.max_utterance_ms and self._total_ms >= self.max_utterance_ms:
            self.logger.debug("utterance_max_reached %s", json.dumps({"ms": int(self._total_ms)}))
            self._closed = True
        return self._closed

    def finish(self, user_id: str) -> Optional[Utterance]:
        """Close the segment and return the utterance, or None when too short."""
        chunks = self._chunks
        speech_ms = self._speech_ms
        total_ms = self._total_ms
        self.reset()

        if not chunks:
            return None

        if speech_ms < self.min_speech_ms:
            self.logger.debug("utterance_discarded %s", json.dumps({
                "user": user_id, "speech_ms": int(speech_ms), "min_ms": self.min_speech_ms
            }))
            return None

        audio = np.concatenate([c.samples for c in chunks])
        utterance = Utterance(
            user_id=user_id,
            audio=audio,
            sample_rate=chunks[0].sample_rate,
            duration_ms=total_ms,
            speech_ms=speech_ms,
        )
        self.logger.info("utterance_finalized %s", json.dumps({
            "user": user_id,
            "chunks": len(chunks),
            "duration_ms": int(total_ms),
            "speech_ms": int(speech_ms),
        }))
        return utterance

    def collect(
        self,
        chunker: AudioChunker,
        user_id: str,
        is_running: Callable[[], bool] = lambda: True,
    ) -> Optional[Utterance]:
        """Record chunks until one segment closes. None when discarded or stopped."""
        self.reset()
        while is_running():
            try:
                chunk = chunker.record_chunk()
            except DeviceError as e:
                if chunker.closed or not is_running():
                    break
                self.logger.warning("chunk_failed %s", json.dumps({"user": user_id, "error": str(e)}))
                time.sleep(self.device_retry_s)
                continue

            self.logger.debug("chunk %s", json.dumps({
                "user": user_id,
                "db": round(chunk.loudness_db, 1) if chunk.loudness_db != float("-inf") else None,
                "speech": self.is_speech(chunk.loudness_db),
            }))

            if self.push(chunk):
                return self.finish(user_id)

        self.reset()
        return None
