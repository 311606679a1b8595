from __future__ import annotations
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


OpCode = Literal["M", "S", "D", "I"]
Mode = Literal["read-aloud", "free"]
Band = Literal["A1", "A2", "B1", "B2", "C1+"]


class _Frozen(BaseModel):
	# camelCase on the wire, snake_case in Python; both accepted on input
	model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class QualityControl(BaseModel):
	model_config = ConfigDict(frozen=True)

	duration: float
	sample_rate: int
	channels: int
	codec: Optional[str] = None
	format: Optional[str] = None


class SpeechSegment(_Frozen):
	start: float = Field(ge=0)
	end: float = Field(ge=0)

	@computed_field
	@property
	def duration(self) -> float:
		return self.end - self.start


class Word(_Frozen):
	text: str
	start: float
	end: float
	confidence: float = Field(ge=0, le=1)


class Transcript(_Frozen):
	text: str
	# Mean recognizer confidence when the backend reports one
	confidence: Optional[float] = Field(default=None, ge=0, le=1)


class Op(_Frozen):
	op: OpCode
	ref: Optional[str] = None
	hyp: Optional[str] = None


class AlignmentStats(BaseModel):
	model_config = ConfigDict(frozen=True)

	S: int = Field(default=0, ge=0)
	D: int = Field(default=0, ge=0)
	I: int = Field(default=0, ge=0)
	M: int = Field(default=0, ge=0)


class AlignmentResult(_Frozen):
	ref_words: List[str]
	hyp_words: List[str]
	ops: List[Op]
	stats: AlignmentStats
	phoneme_error_rate: float = Field(ge=0)
	norm_gop_err: float = Field(serialization_alias="normGOPerr", validation_alias="normGOPerr", ge=0, le=100)

	@computed_field(alias="WER_adjusted")
	@property
	def wer_adjusted(self) -> float:
		s = self.stats
		return (s.S + s.D + s.I) / max(1, len(self.ref_words))


class Weights(BaseModel):
	model_config = ConfigDict(frozen=True)

	SEG: float
	PROS: float
	FLU: float
	INT: float


class Feedback(_Frozen):
	top_phoneme_issues: List[str] = Field(default_factory=list)
	example_words_stress: List[str] = Field(default_factory=list)
	coaching_tips: List[str] = Field(default_factory=list)


class ScoreResult(BaseModel):
	"""Sub-scores, components and the adaptive overall score for one attempt."""

	model_config = ConfigDict(frozen=True, populate_by_name=True)

	segmental: float = Field(alias="SEG", ge=0, le=100)
	prosody: float = Field(alias="PROS", ge=0, le=100)
	fluency: float = Field(alias="FLU", ge=0, le=100)
	intelligibility: float = Field(alias="INT", ge=0, le=100)
	overall: float = Field(alias="OVERALL", ge=0, le=100)
	lexical_stress: float = Field(alias="LexicalStress", ge=0, le=100)
	intonation_stability: float = Field(alias="IntonationStability", ge=0, le=100)
	articulation_rate: Optional[float] = Field(default=None, alias="ArticulationRate", ge=0)
	articulation_rate_score: float = Field(alias="ArticulationRateScore", ge=0, le=100)
	pause_penalty: float = Field(alias="PausePenalty", ge=0, le=100)
	disfluency_score: float = Field(alias="DisfluencyScore", ge=0, le=100)
	per: float = Field(alias="PER", ge=0)
	norm_gop_err: float = Field(alias="normGOPerr", ge=0, le=100)
	wer_adjusted: float = Field(alias="WER_adjusted", ge=0)
	weights: Weights
	level: Band
	feedback: Feedback = Field(default_factory=Feedback, exclude=True)

	def as_dict(self) -> Dict[str, float]:
		return {
			"SEG": self.segmental,
			"PROS": self.prosody,
			"FLU": self.fluency,
			"INT": self.intelligibility,
			"OVERALL": self.overall,
		}


class AssessmentResult(_Frozen):
	ok: bool = True
	mode: Mode
	transcript: str
	words: List[Word]
	segments: List[SpeechSegment]
	alignment: AlignmentResult
	scores: ScoreResult
	feedback: Feedback
	qc: QualityControl
