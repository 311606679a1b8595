from __future__ import annotations
import asyncio
import logging
from functools import lru_cache
from typing import Optional

from ..models import AssessmentResult, Mode
from ..settings import settings
from ..transcription_client import GoogleSpeechBackend, TranscriptionBackend
from ..upstream import UpstreamGate
from .aligner import align, tokenize
from .llm_scorer import LlmScorer
from .normalizer import normalize_audio, scoped_wav
from .scorer import FormulaScorer, ScoringConfig, ScoringInput, ScoringStrategy
from .segmenter import segment_speech
from .transcriber import Transcriber

logger = logging.getLogger(__name__)


class SpeechPipeline:
	"""Normalize -> Segment -> Transcribe -> Align -> Score, one request at a time.

	Stateless across requests; the only shared piece is the upstream gate
	held by the transcriber (and the LLM scorer when that strategy is used).
	"""

	def __init__(
		self,
		transcriber: Transcriber,
		scorer: ScoringStrategy,
		*,
		target_rate: Optional[int] = None,
		min_duration: Optional[float] = None,
		silence_threshold_db: Optional[float] = None,
		min_silence: Optional[float] = None,
		min_segment: Optional[float] = None,
	) -> None:
		self.transcriber = transcriber
		self.scorer = scorer
		self.target_rate = target_rate or settings.target_sample_rate
		self.min_duration = settings.min_audio_seconds if min_duration is None else min_duration
		self.silence_threshold_db = settings.silence_threshold_db if silence_threshold_db is None else silence_threshold_db
		self.min_silence = settings.min_silence_seconds if min_silence is None else min_silence
		self.min_segment = settings.min_segment_seconds if min_segment is None else min_segment

	async def assess(
		self,
		audio: bytes,
		reference_text: Optional[str] = None,
		language: Optional[str] = None,
	) -> AssessmentResult:
		language = (language or settings.speech_language).strip() or settings.speech_language
		# same tokenizer as the aligner: a punctuation-only reference is free speech
		reference_text = (reference_text or "").strip() or None
		mode: Mode = "read-aloud" if tokenize(reference_text) else "free"
		if mode == "free":
			reference_text = None

		# CPU-bound decode/VAD run off the event loop
		asset = await asyncio.to_thread(
			normalize_audio, audio, target_rate=self.target_rate, min_duration=self.min_duration
		)
		segments = await asyncio.to_thread(
			segment_speech,
			asset,
			threshold_db=self.silence_threshold_db,
			min_silence=self.min_silence,
			min_segment=self.min_segment,
		)

		with scoped_wav(asset) as wav_path:
			transcript = await self.transcriber.transcribe(wav_path, asset, language)

		words = self.transcriber.words_for(transcript, segments, asset.duration)
		alignment = align(reference_text, transcript.text)
		qc = asset.qc()
		scores = await self.scorer.score(
			ScoringInput(
				mode=mode,
				language=language,
				qc=qc,
				reference_text=reference_text,
				transcript=transcript.text,
				words=words,
				segments=segments,
				alignment=alignment,
			)
		)
		return AssessmentResult(
			mode=mode,
			transcript=transcript.text,
			words=words,
			segments=segments,
			alignment=alignment,
			scores=scores,
			feedback=scores.feedback,
			qc=qc,
		)


def build_scorer(strategy: str, gate: UpstreamGate) -> ScoringStrategy:
	strategy = (strategy or "formula").strip().lower()
	if strategy == "llm":
		return LlmScorer(gate)
	if strategy != "formula":
		raise ValueError(f"Unknown SCORING_STRATEGY {strategy!r}; expected 'formula' or 'llm'")
	return FormulaScorer(ScoringConfig.from_settings())


def build_pipeline(
	backend: Optional[TranscriptionBackend] = None,
	*,
	gate: Optional[UpstreamGate] = None,
	strategy: Optional[str] = None,
) -> SpeechPipeline:
	gate = gate or UpstreamGate(settings.upstream_concurrency)
	transcriber = Transcriber(backend or GoogleSpeechBackend(), gate)
	return SpeechPipeline(transcriber, build_scorer(strategy or settings.scoring_strategy, gate))


@lru_cache(maxsize=1)
def get_pipeline() -> SpeechPipeline:
	"""Process-wide default pipeline (FastAPI dependency; override in tests)."""
	logger.info("Building speech pipeline (scoring strategy: %s)", settings.scoring_strategy)
	return build_pipeline()
