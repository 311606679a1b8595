from __future__ import annotations
import logging
from typing import List, Optional, Protocol

from google.cloud import speech_v1p1beta1 as speech
from google.api_core import exceptions as google_exceptions

from .models import Transcript
from .settings import settings

logger = logging.getLogger(__name__)


class TranscriptionBackend(Protocol):
	"""Speech-to-text capability: normalized WAV in, plain text out.

	Implementations are synchronous and are driven from a worker thread by
	the transcriber, which owns the retry and concurrency policy. ``timeout``
	is the per-attempt deadline; implementations must abort the upstream call
	once it passes, since the worker thread itself cannot be cancelled.
	"""

	def transcribe(
		self, wav_bytes: bytes, sample_rate: int, language: str, timeout: Optional[float] = None
	) -> Transcript:
		...


def is_retryable_error(err: BaseException) -> bool:
	"""Rate limiting and server-side failures are transient; other client errors are not."""
	if isinstance(err, (google_exceptions.TooManyRequests, google_exceptions.ServerError)):
		return True
	if isinstance(err, google_exceptions.RetryError):
		return True
	return isinstance(err, (ConnectionError, TimeoutError))


class GoogleSpeechBackend:
	"""Google Cloud Speech-to-Text ``recognize`` on LINEAR16 audio."""

	def __init__(self, client: Optional[speech.SpeechClient] = None, *, model: Optional[str] = None) -> None:
		self._client = client
		self.model = model or settings.speech_model

	@property
	def client(self) -> speech.SpeechClient:
		# Credentials are resolved on first use so the app can boot without them
		if self._client is None:
			self._client = speech.SpeechClient()
		return self._client

	def transcribe(
		self, wav_bytes: bytes, sample_rate: int, language: str, timeout: Optional[float] = None
	) -> Transcript:
		audio = speech.RecognitionAudio(content=wav_bytes)
		config = speech.RecognitionConfig(
			encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
			sample_rate_hertz=sample_rate,
			audio_channel_count=1,
			language_code=language or settings.speech_language,
			model=self.model,
			profanity_filter=False,
			enable_automatic_punctuation=True,
		)
		# gRPC deadline: the call itself aborts with DeadlineExceeded
		response = self.client.recognize(config=config, audio=audio, timeout=timeout)
		texts: List[str] = []
		confidences: List[float] = []
		for result in response.results:
			if not result.alternatives:
				continue
			best = result.alternatives[0]
			if best.transcript:
				texts.append(best.transcript.strip())
			# 0.0 means "not provided" in the proto
			if best.confidence:
				confidences.append(float(best.confidence))
		text = " ".join(t for t in texts if t)
		confidence = (sum(confidences) / len(confidences)) if confidences else None
		logger.debug("Google STT returned %d result(s), confidence=%s", len(texts), confidence)
		return Transcript(text=text, confidence=confidence)
