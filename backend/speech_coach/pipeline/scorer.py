"""
Formula-based scoring of one speaking attempt.

Sub-scores (all 0-100):

- SEG  = 0.6*(100 - normGOPerr) + 0.4*(100 - 100*PER)
- FLU  = 0.4*ArticulationRateScore + 0.3*(100 - PausePenalty) + 0.3*DisfluencyScore
- PROS = 0.5*LexicalStress + 0.5*IntonationStability
- INT  = 100 - 100*WER_adjusted (read-aloud) or confidence based (free)

OVERALL is a weighted sum whose weights depend on a coarse proficiency
band, and a CEFR label is read off OVERALL (INT gates A2).

Heuristics worth knowing about: syllables are estimated as words x 1.4
rather than counted, DisfluencyScore is just a logistic of the word count,
and without pitch extraction LexicalStress/IntonationStability sit at a
fixed mid value.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict

from ..models import (
	AlignmentResult,
	Band,
	Feedback,
	Mode,
	QualityControl,
	ScoreResult,
	SpeechSegment,
	Weights,
	Word,
)
from ..settings import settings
from .aligner import phoneme_confusions

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

class ScoringConfig(BaseModel):
	"""Tunable heuristics; defaults mirror the service settings."""

	model_config = ConfigDict(frozen=True)

	syllables_per_word: float = 1.4
	pause_threshold: float = 0.2
	articulation_rate_scale: float = 25.0
	articulation_center: float = 50.0
	articulation_steepness: float = 0.1
	disfluency_center: float = 50.0
	disfluency_steepness: float = 0.02
	default_prosody: float = 65.0

	@classmethod
	def from_settings(cls) -> "ScoringConfig":
		return cls(
			syllables_per_word=settings.syllables_per_word,
			pause_threshold=settings.pause_threshold_seconds,
			articulation_rate_scale=settings.articulation_rate_scale,
			articulation_center=settings.articulation_center,
			articulation_steepness=settings.articulation_steepness,
			disfluency_center=settings.disfluency_center,
			disfluency_steepness=settings.disfluency_steepness,
			default_prosody=settings.default_prosody_score,
		)


# Adaptive weights per proficiency band
WEIGHTS: Dict[str, Weights] = {
	"A1/A2": Weights(SEG=0.20, PROS=0.10, FLU=0.30, INT=0.40),
	"B1/B2": Weights(SEG=0.35, PROS=0.25, FLU=0.25, INT=0.15),
	"C1+": Weights(SEG=0.30, PROS=0.35, FLU=0.20, INT=0.15),
}


class ScoringInput(BaseModel):
	"""Everything a scoring strategy needs about one attempt."""

	model_config = ConfigDict(frozen=True)

	mode: Mode
	language: str
	qc: QualityControl
	reference_text: Optional[str] = None
	transcript: str
	words: List[Word]
	segments: List[SpeechSegment]
	alignment: AlignmentResult


class ScoringStrategy(Protocol):
	async def score(self, inp: ScoringInput) -> ScoreResult:
		...


# ============================================================================
# FORMULAS
# ============================================================================

def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
	if value != value:  # NaN
		return low
	return max(low, min(high, value))


def clamp01(value: float) -> float:
	return clamp(value, 0.0, 1.0)


def logistic(x: float, k: float = 0.1, x0: float = 0.0) -> float:
	"""Logistic curve mapped to 0..100."""
	z = -k * (x - x0)
	# exp overflows past ~709
	if z > 700:
		return 0.0
	return clamp(100.0 / (1.0 + math.exp(z)))


def pause_gaps(duration: float, segments: Sequence[SpeechSegment]) -> List[float]:
	"""Gaps between speech segments, including leading and trailing silence."""
	gaps: List[float] = []
	last_end = 0.0
	for seg in segments:
		if seg.start > last_end:
			gaps.append(seg.start - last_end)
		last_end = seg.end
	if last_end < duration:
		gaps.append(duration - last_end)
	return gaps


def score_segmental(per: float, norm_gop_err: float) -> float:
	return clamp(0.6 * (100.0 - norm_gop_err) + 0.4 * (100.0 - 100.0 * clamp01(per)))


def score_fluency(
	duration: float,
	segments: Sequence[SpeechSegment],
	word_count: int,
	cfg: ScoringConfig,
) -> Dict[str, float]:
	speech = sum(s.duration for s in segments)
	syllables = max(1, int(math.floor(word_count * cfg.syllables_per_word + 0.5)))
	articulation_rate = syllables / speech if speech > 0 else 0.0

	long_pauses = sum(p for p in pause_gaps(duration, segments) if p > cfg.pause_threshold)
	pause_penalty = clamp01(long_pauses / max(1.0, duration)) * 100.0

	articulation_score = logistic(
		articulation_rate * cfg.articulation_rate_scale,
		cfg.articulation_steepness,
		cfg.articulation_center,
	)
	disfluency_score = logistic(word_count, cfg.disfluency_steepness, cfg.disfluency_center)
	flu = 0.4 * articulation_score + 0.3 * (100.0 - pause_penalty) + 0.3 * disfluency_score
	return {
		"articulation_rate": articulation_rate,
		"articulation_rate_score": articulation_score,
		"pause_penalty": pause_penalty,
		"disfluency_score": disfluency_score,
		"fluency": clamp(flu),
	}


def score_prosody(
	cfg: ScoringConfig,
	lexical_stress: Optional[float] = None,
	intonation_stability: Optional[float] = None,
) -> Dict[str, float]:
	# No F0 extraction: fixed mid values unless real estimates are supplied
	stress = clamp(cfg.default_prosody if lexical_stress is None else lexical_stress)
	intonation = clamp(cfg.default_prosody if intonation_stability is None else intonation_stability)
	return {
		"lexical_stress": stress,
		"intonation_stability": intonation,
		"prosody": clamp(0.5 * stress + 0.5 * intonation),
	}


def score_intelligibility(mode: Mode, wer_adjusted: float, avg_confidence: float) -> float:
	if mode == "read-aloud":
		return clamp(100.0 - 100.0 * clamp01(wer_adjusted))
	conf = clamp01(avg_confidence)
	oov_penalty = 10.0 * (1.0 - conf)
	return clamp(100.0 * conf - oov_penalty)


def average_confidence(words: Sequence[Word]) -> float:
	if not words:
		return 0.0
	return sum(w.confidence for w in words) / len(words)


def estimate_level_hint(fluency: float) -> str:
	"""Coarse band guess used to pick weights before the overall score exists."""
	return "B1" if fluency > 70 else "A2"


def weights_for(level: str) -> Weights:
	if level in ("A1", "A2"):
		return WEIGHTS["A1/A2"]
	if level in ("C1", "C1+", "C2"):
		return WEIGHTS["C1+"]
	return WEIGHTS["B1/B2"]


def adaptive_overall(weights: Weights, seg: float, pros: float, flu: float, intel: float) -> float:
	return clamp(weights.SEG * seg + weights.PROS * pros + weights.FLU * flu + weights.INT * intel)


def map_cefr(overall: float, intelligibility: float) -> Band:
	if overall > 82:
		return "C1+"
	if overall >= 70:
		return "B2"
	if overall >= 55:
		return "B1"
	if overall >= 40 and intelligibility >= 45:
		return "A2"
	return "A1"


# ============================================================================
# FEEDBACK
# ============================================================================

def build_feedback(
	mode: Mode,
	alignment: AlignmentResult,
	fluency: Dict[str, float],
	word_count: int,
) -> Feedback:
	tips: List[str] = []
	if word_count == 0:
		tips.append("We could not hear any speech. Check your microphone and speak for at least 5 seconds.")
	if alignment.phoneme_error_rate > 0.3:
		tips.append("Work on individual sounds. Practice minimal pairs like /θ/ vs /t/.")
	if fluency["pause_penalty"] > 20:
		tips.append("Reduce long pauses. Try shadowing 4 to 7 syllables per run.")
	rate = fluency["articulation_rate"]
	if 0 < rate < 2.5:
		tips.append("Your pace is slow. Group words into short phrases and keep them flowing.")
	elif rate > 6.5:
		tips.append("You are speaking very fast. Slow down slightly so each word lands clearly.")
	if mode == "read-aloud" and alignment.stats.D > 0:
		tips.append("Some words from the text were skipped. Follow the script closely, word by word.")
	if not tips:
		tips.append("Clear and steady delivery. Keep practising with longer passages.")

	examples: List[str] = []
	if mode == "read-aloud":
		for o in alignment.ops:
			if o.op in ("S", "D") and o.ref and o.ref not in examples:
				examples.append(o.ref)
			if len(examples) >= 5:
				break

	return Feedback(
		top_phoneme_issues=phoneme_confusions(alignment.ops),
		example_words_stress=examples,
		coaching_tips=tips,
	)


# ============================================================================
# STRATEGY
# ============================================================================

class FormulaScorer:
	"""Local, deterministic scoring strategy."""

	def __init__(self, config: Optional[ScoringConfig] = None) -> None:
		self.config = config or ScoringConfig.from_settings()

	def score_sync(self, inp: ScoringInput) -> ScoreResult:
		cfg = self.config
		alignment = inp.alignment
		word_count = len(inp.words)

		seg = score_segmental(alignment.phoneme_error_rate, alignment.norm_gop_err)
		flu = score_fluency(inp.qc.duration, inp.segments, word_count, cfg)
		pros = score_prosody(cfg)
		wer = alignment.wer_adjusted
		intel = score_intelligibility(inp.mode, wer, average_confidence(inp.words))

		weights = weights_for(estimate_level_hint(flu["fluency"]))
		overall = adaptive_overall(weights, seg, pros["prosody"], flu["fluency"], intel)
		level = map_cefr(overall, intel)

		result = ScoreResult(
			segmental=seg,
			prosody=pros["prosody"],
			fluency=flu["fluency"],
			intelligibility=intel,
			overall=overall,
			lexical_stress=pros["lexical_stress"],
			intonation_stability=pros["intonation_stability"],
			articulation_rate=flu["articulation_rate"],
			articulation_rate_score=flu["articulation_rate_score"],
			pause_penalty=flu["pause_penalty"],
			disfluency_score=flu["disfluency_score"],
			per=alignment.phoneme_error_rate,
			norm_gop_err=alignment.norm_gop_err,
			wer_adjusted=wer,
			weights=weights,
			level=level,
			feedback=build_feedback(inp.mode, alignment, flu, word_count),
		)
		logger.info(
			"Scored %s attempt: SEG=%.1f PROS=%.1f FLU=%.1f INT=%.1f OVERALL=%.1f (%s)",
			inp.mode, seg, pros["prosody"], flu["fluency"], intel, overall, level,
		)
		return result

	async def score(self, inp: ScoringInput) -> ScoreResult:
		return self.score_sync(inp)
