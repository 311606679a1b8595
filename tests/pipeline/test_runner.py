import asyncio
import os
import tempfile

import pytest
from google.api_core import exceptions as google_exceptions

from speech_coach.errors import DecodeError, TooShortError, TranscriptionUnavailable
from speech_coach.pipeline import normalizer
from speech_coach.pipeline.llm_scorer import LlmScorer
from speech_coach.pipeline.runner import build_pipeline, build_scorer
from speech_coach.pipeline.scorer import FormulaScorer
from speech_coach.upstream import UpstreamGate


@pytest.fixture
def track_temp_files(monkeypatch):
	"""Record every temp path handed out by ``scoped_wav``."""
	paths = []
	real_mkstemp = tempfile.mkstemp

	def mkstemp(*args, **kwargs):
		fd, path = real_mkstemp(*args, **kwargs)
		paths.append(path)
		return fd, path

	monkeypatch.setattr(normalizer.tempfile, "mkstemp", mkstemp)
	return paths


def test_read_aloud_end_to_end(make_wav, make_pipeline, fake_backend_cls, track_temp_files):
	backend = fake_backend_cls(text="the quick brown fox", confidence=0.92)
	pipeline = make_pipeline(backend)
	audio = make_wav(8.0, rate=44100, speech=[(0.5, 3.5), (4.5, 7.5)], channels=2)

	result = asyncio.run(pipeline.assess(audio, reference_text="The quick brown fox.", language="en-US"))

	assert result.ok
	assert result.mode == "read-aloud"
	assert result.transcript == "the quick brown fox"
	assert result.qc.sample_rate == 16000
	assert result.qc.channels == 2
	assert backend.last_rate == 16000
	assert len(result.segments) == 2
	assert [w.text for w in result.words] == ["the", "quick", "brown", "fox"]
	assert result.alignment.stats.M == 4
	assert result.scores.intelligibility == 100
	assert result.feedback == result.scores.feedback
	assert track_temp_files and not any(os.path.exists(p) for p in track_temp_files)


def test_free_mode_without_reference(make_wav, make_pipeline, fake_backend_cls):
	pipeline = make_pipeline(fake_backend_cls(text="I usually walk to work"))
	result = asyncio.run(pipeline.assess(make_wav(6.0), reference_text="   "))
	assert result.mode == "free"
	assert result.alignment.ref_words == result.alignment.hyp_words
	# no backend confidence: words carry the default 0.7
	assert {w.confidence for w in result.words} == {0.7}


def test_repeated_words_in_the_reference_are_not_penalized(make_wav, make_pipeline, fake_backend_cls):
	text = "I had had enough so so I left"
	pipeline = make_pipeline(fake_backend_cls(text=text, confidence=0.9))
	result = asyncio.run(pipeline.assess(make_wav(6.0), reference_text=text))
	assert result.transcript == text
	assert result.alignment.stats.model_dump() == {"S": 0, "D": 0, "I": 0, "M": 8}
	assert result.scores.intelligibility == 100


def test_punctuation_only_reference_is_free_speech(make_wav, make_pipeline, fake_backend_cls):
	pipeline = make_pipeline(fake_backend_cls(text="I usually walk to work", confidence=0.8))
	result = asyncio.run(pipeline.assess(make_wav(6.0), reference_text="!!!"))
	assert result.mode == "free"
	assert result.alignment.stats.D == 0
	# confidence-based intelligibility: 80 minus the 2 point OOV penalty
	assert result.scores.intelligibility == pytest.approx(78)


def test_short_audio_never_reaches_transcription(make_wav, make_pipeline, fake_backend_cls):
	backend = fake_backend_cls(text="unused")
	pipeline = make_pipeline(backend)
	with pytest.raises(TooShortError):
		asyncio.run(pipeline.assess(make_wav(3.0), reference_text="hello"))
	assert backend.calls == 0


def test_undecodable_audio(make_pipeline, fake_backend_cls):
	backend = fake_backend_cls()
	with pytest.raises(DecodeError):
		asyncio.run(make_pipeline(backend).assess(b"\x00\x01garbage" * 100))
	assert backend.calls == 0


def test_silent_clip_scores_without_error(make_wav, make_pipeline, fake_backend_cls):
	pipeline = make_pipeline(fake_backend_cls(text=""))
	result = asyncio.run(pipeline.assess(make_wav(10.0, speech=[])))
	assert result.segments == []
	assert result.words == []
	assert result.scores.articulation_rate == 0
	assert result.scores.pause_penalty == 100
	assert result.scores.intelligibility == 0
	assert result.scores.level == "A1"


def test_temp_file_removed_when_transcription_fails(make_wav, make_pipeline, fake_backend_cls, track_temp_files):
	backend = fake_backend_cls(errors=[google_exceptions.PermissionDenied("no creds")])
	pipeline = make_pipeline(backend)
	with pytest.raises(TranscriptionUnavailable):
		asyncio.run(pipeline.assess(make_wav(6.0), reference_text="hello"))
	assert len(track_temp_files) == 1
	assert not os.path.exists(track_temp_files[0])


def test_build_scorer_strategies():
	gate = UpstreamGate(1)
	assert isinstance(build_scorer("formula", gate), FormulaScorer)
	assert isinstance(build_scorer(" LLM ", gate), LlmScorer)
	with pytest.raises(ValueError):
		build_scorer("magic", gate)


def test_build_pipeline_shares_the_gate(fake_backend_cls):
	gate = UpstreamGate(3)
	pipeline = build_pipeline(fake_backend_cls(), gate=gate, strategy="llm")
	assert pipeline.transcriber.gate is gate
	assert pipeline.scorer.gate is gate
