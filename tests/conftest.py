# File: tests/conftest.py

import threading
import time
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from speech_coach.models import Transcript
from speech_coach.pipeline.runner import SpeechPipeline
from speech_coach.pipeline.scorer import FormulaScorer, ScoringConfig
from speech_coach.pipeline.transcriber import Transcriber
from speech_coach.settings import settings
from speech_coach.upstream import UpstreamGate

from audio_helpers import synth_samples, wav_bytes


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
	"""No real backoff sleeps and no OpenRouter fallback during tests."""
	monkeypatch.setattr(settings, "retry_base_delay_seconds", 0.0)
	monkeypatch.setattr(settings, "retry_jitter_seconds", 0.0)
	monkeypatch.setattr(settings, "openrouter_api_key", None)


@pytest.fixture
def make_wav() -> Callable[..., bytes]:
	def _make(
		duration: float,
		rate: int = 16000,
		speech: Sequence[Tuple[float, Optional[float]]] = ((0.0, None),),
		channels: int = 1,
	) -> bytes:
		mono = synth_samples(duration, rate, speech)
		data = mono if channels == 1 else np.stack([mono] * channels, axis=1)
		return wav_bytes(data, rate)

	return _make


class FakeBackend:
	"""Scripted speech-to-text backend.

	``errors`` are raised in order on the first calls, then ``text`` is returned.
	"""

	def __init__(
		self,
		text: str = "",
		confidence: Optional[float] = None,
		errors: Sequence[BaseException] = (),
		delay: float = 0.0,
	) -> None:
		self.text = text
		self.confidence = confidence
		self.errors: List[BaseException] = list(errors)
		self.delay = delay
		self.calls = 0
		self.last_rate: Optional[int] = None
		self.last_timeout: Optional[float] = None
		self.active = 0
		self.peak = 0
		self._lock = threading.Lock()

	def transcribe(
		self, wav_bytes: bytes, sample_rate: int, language: str, timeout: Optional[float] = None
	) -> Transcript:
		with self._lock:
			self.calls += 1
			self.active += 1
			self.peak = max(self.peak, self.active)
		self.last_rate = sample_rate
		self.last_timeout = timeout
		try:
			# ignores the deadline, like a backend stuck on the network
			if self.delay:
				time.sleep(self.delay)
			if self.errors:
				raise self.errors.pop(0)
			return Transcript(text=self.text, confidence=self.confidence)
		finally:
			with self._lock:
				self.active -= 1


@pytest.fixture
def fake_backend_cls():
	return FakeBackend


@pytest.fixture
def make_pipeline() -> Callable[..., SpeechPipeline]:
	def _make(backend: FakeBackend, **transcriber_kwargs) -> SpeechPipeline:
		gate = UpstreamGate(2)
		transcriber = Transcriber(backend, gate, **transcriber_kwargs)
		return SpeechPipeline(transcriber, FormulaScorer(ScoringConfig()))

	return _make
