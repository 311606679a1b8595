from __future__ import annotations
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ScoringUnavailable
from ..gemini_client import GeminiClient
from ..models import Feedback, ScoreResult, Weights
from ..upstream import UpstreamGate
from .scorer import ScoringInput, clamp

logger = logging.getLogger(__name__)

# Sub-scores from the model are kept off the absolute ends of the scale
SOFT_MIN = 5.0
SOFT_MAX = 95.0

MAX_WORDS = 500
MAX_SEGMENTS = 200


SYSTEM_PROMPT = """
You are a strict, calibration-aware speech pronunciation rater.
Given an ASR transcript, optional reference text, VAD segments and lightweight alignment stats, assign 0-100 scores for SEG (segmental), PROS (stress and intonation), FLU (fluency), INT (intelligibility) and the adaptive OVERALL.
Rules:
- Return ONLY JSON. No commentary, no markdown.
- Use these formulas:
  SEG = 0.6*(100 - normGOPerr) + 0.4*(100 - 100*PER)
  PROS = 0.5*LexicalStress + 0.5*IntonationStability
  FLU = 0.4*ArticulationRateScore + 0.3*(100 - PausePenalty) + 0.3*DisfluencyScore
  read-aloud: INT = 100 - 100*WER_adjusted; free: INT from average ASR confidence with an out-of-vocabulary penalty.
- Keep sub-scores within 5..95 unless the attempt is obviously perfect or empty.
- Weight OVERALL by expected CEFR band: A1/A2 (SEG .20, PROS .10, FLU .30, INT .40), B1/B2 (SEG .35, PROS .25, FLU .25, INT .15), C1+ (SEG .30, PROS .35, FLU .20, INT .15).
- Provide topPhonemeIssues, exampleWordsStress and coachingTips as arrays of short strings.
""".strip()

RESPONSE_SHAPE = """
{
  "scores": {
    "SEG": 0-100, "PROS": 0-100, "FLU": 0-100, "INT": 0-100, "OVERALL": 0-100,
    "weights": {"SEG": n, "PROS": n, "FLU": n, "INT": n},
    "LexicalStress": 0-100, "IntonationStability": 0-100,
    "ArticulationRateScore": 0-100, "PausePenalty": 0-100, "DisfluencyScore": 0-100,
    "PER": 0-1, "normGOPerr": 0-100, "WER_adjusted": 0-1, "level": "A1|A2|B1|B2|C1+"
  },
  "feedback": {
    "topPhonemeIssues": [string], "exampleWordsStress": [string], "coachingTips": [string]
  }
}
""".strip()


# ============================================================================
# RESPONSE SCHEMA
# ============================================================================

class _LlmScores(BaseModel):
	model_config = ConfigDict(extra="ignore")

	SEG: float = Field(ge=0, le=100)
	PROS: float = Field(ge=0, le=100)
	FLU: float = Field(ge=0, le=100)
	INT: float = Field(ge=0, le=100)
	OVERALL: float = Field(ge=0, le=100)
	weights: Weights
	LexicalStress: float = Field(ge=0, le=100)
	IntonationStability: float = Field(ge=0, le=100)
	ArticulationRateScore: float = Field(ge=0, le=100)
	PausePenalty: float = Field(ge=0, le=100)
	DisfluencyScore: float = Field(ge=0, le=100)
	PER: float = Field(ge=0)
	normGOPerr: float = Field(ge=0, le=100)
	WER_adjusted: float = Field(ge=0)
	level: str

	@field_validator("level")
	@classmethod
	def _normalize_level(cls, value: str) -> str:
		level = value.strip().upper()
		if level in ("C1", "C2", "C1+", "C2+"):
			return "C1+"
		if level not in ("A1", "A2", "B1", "B2"):
			raise ValueError(f"unknown CEFR level {value!r}")
		return level


class _LlmFeedback(BaseModel):
	model_config = ConfigDict(extra="ignore")

	topPhonemeIssues: List[str]
	exampleWordsStress: List[str]
	coachingTips: List[str]


class LlmScoreResponse(BaseModel):
	scores: _LlmScores
	feedback: _LlmFeedback


def extract_json_block(text: str) -> Dict[str, Any]:
	"""Extract the JSON object from LLM response text.

	Attempts to parse the entire text as JSON first, then falls back to the
	outermost ``{...}`` span (models like to wrap JSON in prose or fences).

	Raises:
		ValueError: if no JSON object can be extracted
	"""
	try:
		data = json.loads(text)
		if isinstance(data, dict):
			return data
	except (TypeError, ValueError):
		pass
	match = re.search(r"\{[\s\S]*\}", text or "")
	if match:
		try:
			data = json.loads(match.group(0))
			if isinstance(data, dict):
				return data
		except ValueError:
			pass
	raise ValueError("Failed to parse JSON from model output")


def parse_score_response(text: str) -> LlmScoreResponse:
	"""Untrusted model text -> validated response; any mismatch is ScoringUnavailable."""
	try:
		return LlmScoreResponse.model_validate(extract_json_block(text))
	except (ValueError, ValidationError) as e:
		logger.error("Scoring model returned an invalid payload: %s", e)
		raise ScoringUnavailable("Scoring service returned an invalid response") from e


def soft_clamp(value: float) -> float:
	return clamp(value, SOFT_MIN, SOFT_MAX)


def build_user_prompt(inp: ScoringInput) -> str:
	a = inp.alignment
	payload = {
		"mode": inp.mode,
		"language": inp.language,
		"qc": inp.qc.model_dump(),
		"referenceText": inp.reference_text or "",
		"transcriptText": inp.transcript,
		"words": [w.model_dump(by_alias=True) for w in inp.words[:MAX_WORDS]],
		"segments": [s.model_dump(by_alias=True) for s in inp.segments[:MAX_SEGMENTS]],
		"alignment": {
			"stats": a.stats.model_dump(),
			"PER": a.phoneme_error_rate,
			"normGOPerr": a.norm_gop_err,
			"WER_adjusted": a.wer_adjusted,
			"refWordCount": len(a.ref_words),
			"hypWordCount": len(a.hyp_words),
		},
	}
	return (
		"Task: compute the scores using the formulas. Where a value is missing (e.g. true GOP), "
		"estimate it from the alignment stats and typical distributions. Keep outputs consistent and realistic.\n\n"
		f"Input:\n{json.dumps(payload, ensure_ascii=False)}\n\n"
		f"Return JSON with exactly this shape:\n{RESPONSE_SHAPE}"
	)


# ============================================================================
# STRATEGY
# ============================================================================

class LlmScorer:
	"""Delegates scoring and coaching text to Gemini.

	There is no fallback to the formula scorer: a failed or malformed
	response surfaces as ``ScoringUnavailable``.
	"""

	def __init__(
		self,
		gate: UpstreamGate,
		*,
		client_factory: Optional[Callable[[], GeminiClient]] = None,
		temperature: float = 0.2,
	) -> None:
		self.gate = gate
		self.client_factory = client_factory or GeminiClient
		self.temperature = temperature

	async def _complete(self, prompt: str) -> str:
		try:
			client = self.client_factory()
		except ValueError as e:
			raise ScoringUnavailable(f"Scoring service is not configured: {e}") from e
		try:
			return await client.generate(
				prompt,
				system=SYSTEM_PROMPT,
				temperature=self.temperature,
				allow_fallback=False,
			)
		finally:
			await client.aclose()

	async def score(self, inp: ScoringInput) -> ScoreResult:
		prompt = build_user_prompt(inp)
		try:
			raw = await self.gate.run(lambda: self._complete(prompt))
		except ScoringUnavailable:
			raise
		except Exception as e:
			logger.error("Scoring model call failed: %s", e)
			raise ScoringUnavailable(f"Scoring service unavailable: {e}") from e

		parsed = parse_score_response(raw)
		s, fb = parsed.scores, parsed.feedback
		result = ScoreResult(
			segmental=soft_clamp(s.SEG),
			prosody=soft_clamp(s.PROS),
			fluency=soft_clamp(s.FLU),
			intelligibility=soft_clamp(s.INT),
			overall=soft_clamp(s.OVERALL),
			lexical_stress=soft_clamp(s.LexicalStress),
			intonation_stability=soft_clamp(s.IntonationStability),
			articulation_rate_score=soft_clamp(s.ArticulationRateScore),
			pause_penalty=clamp(s.PausePenalty),
			disfluency_score=soft_clamp(s.DisfluencyScore),
			per=s.PER,
			norm_gop_err=s.normGOPerr,
			wer_adjusted=s.WER_adjusted,
			weights=s.weights,
			level=s.level,
			feedback=Feedback(
				top_phoneme_issues=fb.topPhonemeIssues,
				example_words_stress=fb.exampleWordsStress,
				coaching_tips=fb.coachingTips,
			),
		)
		logger.info("LLM scored %s attempt: OVERALL=%.1f (%s)", inp.mode, result.overall, result.level)
		return result
