"""
Transcriber: external speech-to-text plus approximate word timing.

The recognizer returns plain text. Word timestamps are reconstructed by
spreading the words evenly over the detected speech segments. This is a
linear approximation, NOT acoustic alignment: a word's start/end only says
roughly where in the speech it falls.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import List, Optional, Sequence

from ..errors import TranscriptionUnavailable
from ..models import SpeechSegment, Transcript, Word
from ..settings import settings
from ..transcription_client import TranscriptionBackend, is_retryable_error
from ..upstream import UpstreamGate, call_with_retry, content_key
from .normalizer import AudioAsset

logger = logging.getLogger(__name__)


def clean_transcript(text: Optional[str]) -> str:
	"""Collapse whitespace only; repeated words are the learner's and get scored."""
	return re.sub(r"\s+", " ", text or "").strip()


def approximate_word_timestamps(
	text: str,
	segments: Sequence[SpeechSegment],
	total_duration: float,
	confidence: float,
) -> List[Word]:
	"""Distribute the transcript's words evenly across the speech segments.

	Each word gets the average word duration (speech time / word count).
	A cursor walks the segments in order and jumps to the next segment's
	start whenever the next word would run past the current segment's end.
	With no segments the whole clip is treated as speech.
	"""
	tokens = [w for w in (text or "").split() if w]
	if not tokens:
		return []
	speech = sum(s.duration for s in segments) or total_duration or 1.0
	avg = speech / len(tokens)
	confidence = min(1.0, max(0.0, confidence))

	words: List[Word] = []
	t = segments[0].start if segments else 0.0
	idx = 0
	for token in tokens:
		if segments:
			seg = segments[idx]
			if t + avg > seg.end and idx < len(segments) - 1:
				idx += 1
				t = max(t, segments[idx].start)
		start, end = t, t + avg
		t = end
		if total_duration > 0:
			start, end = min(start, total_duration), min(end, total_duration)
		words.append(Word(text=token, start=round(start, 3), end=round(end, 3), confidence=confidence))
	return words


class Transcriber:
	"""Runs the speech-to-text backend under the shared upstream gate."""

	def __init__(
		self,
		backend: TranscriptionBackend,
		gate: UpstreamGate,
		*,
		timeout: Optional[float] = None,
		retries: Optional[int] = None,
		default_confidence: Optional[float] = None,
	) -> None:
		self.backend = backend
		self.gate = gate
		self.timeout = settings.transcription_timeout_seconds if timeout is None else timeout
		self.retries = settings.upstream_retries if retries is None else retries
		self.default_confidence = settings.default_asr_confidence if default_confidence is None else default_confidence

	async def _attempt(self, wav_bytes: bytes, sample_rate: int, language: str) -> Transcript:
		worker = asyncio.ensure_future(
			asyncio.to_thread(self.backend.transcribe, wav_bytes, sample_rate, language, self.timeout)
		)
		try:
			return await asyncio.wait_for(asyncio.shield(worker), timeout=self.timeout)
		except asyncio.TimeoutError:
			# threads cannot be cancelled; hold the gate slot until the backend returns
			await asyncio.gather(worker, return_exceptions=True)
			logger.warning("Transcription exceeded %.1fs", self.timeout)
			raise

	async def _recognize(self, wav_bytes: bytes, sample_rate: int, language: str) -> Transcript:
		# timeout=None: each attempt enforces its own deadline in _attempt
		return await call_with_retry(
			lambda: self._attempt(wav_bytes, sample_rate, language),
			retries=self.retries,
			base_delay=settings.retry_base_delay_seconds,
			jitter=settings.retry_jitter_seconds,
			timeout=None,
			is_retryable=is_retryable_error,
			label="transcription",
		)

	async def transcribe(self, wav_path: str, asset: AudioAsset, language: str) -> Transcript:
		with open(wav_path, "rb") as fh:
			wav_bytes = fh.read()
		key = content_key("stt", language, wav_bytes)
		try:
			result = await self.gate.run_shared(
				key, lambda: self._recognize(wav_bytes, asset.sample_rate, language)
			)
		except asyncio.TimeoutError:
			raise TranscriptionUnavailable("Transcription service timed out; please try again")
		except Exception as e:
			logger.error("Transcription failed: %s", e)
			raise TranscriptionUnavailable(f"Transcription service unavailable: {e}") from e
		cleaned = clean_transcript(result.text)
		logger.info("Transcribed %.2fs of audio into %d word(s)", asset.duration, len(cleaned.split()))
		return Transcript(text=cleaned, confidence=result.confidence)

	def words_for(self, transcript: Transcript, segments: Sequence[SpeechSegment], duration: float) -> List[Word]:
		confidence = transcript.confidence if transcript.confidence is not None else self.default_confidence
		return approximate_word_timestamps(transcript.text, segments, duration, confidence)
