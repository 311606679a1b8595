from __future__ import annotations
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..models import SpeechSegment
from ..settings import settings
from .normalizer import AudioAsset

logger = logging.getLogger(__name__)

# Analysis frame for the silence detector
FRAME_SECONDS = 0.01


def frame_levels_db(samples: np.ndarray, sample_rate: int, frame_seconds: float = FRAME_SECONDS) -> np.ndarray:
	"""RMS level of consecutive frames in dBFS (digital silence ~ -200 dB)."""
	frame_len = max(1, int(round(sample_rate * frame_seconds)))
	n_frames = int(np.ceil(len(samples) / frame_len)) if len(samples) else 0
	if n_frames == 0:
		return np.zeros(0, dtype=np.float64)
	padded = np.zeros(n_frames * frame_len, dtype=np.float64)
	padded[: len(samples)] = samples
	frames = padded.reshape(n_frames, frame_len)
	rms = np.sqrt(np.mean(frames * frames, axis=1))
	return 20.0 * np.log10(rms + 1e-10)


def detect_silences(
	asset: AudioAsset,
	threshold_db: Optional[float] = None,
	min_silence: Optional[float] = None,
) -> List[Tuple[float, float]]:
	"""Silence intervals: runs of frames below ``threshold_db`` lasting at least ``min_silence`` seconds."""
	threshold_db = settings.silence_threshold_db if threshold_db is None else threshold_db
	min_silence = settings.min_silence_seconds if min_silence is None else min_silence

	levels = frame_levels_db(asset.samples, asset.sample_rate)
	if levels.size == 0:
		return []
	frame_len = max(1, int(round(asset.sample_rate * FRAME_SECONDS)))
	frame_dur = frame_len / float(asset.sample_rate)
	quiet = np.concatenate(([False], levels < threshold_db, [False]))
	edges = np.diff(quiet.astype(np.int8))
	starts = np.flatnonzero(edges == 1)
	ends = np.flatnonzero(edges == -1)

	duration = asset.duration
	silences: List[Tuple[float, float]] = []
	for s, e in zip(starts, ends):
		start = s * frame_dur
		end = min(e * frame_dur, duration)
		if end - start >= min_silence:
			silences.append((start, end))
	return silences


def build_speech_segments(
	duration: float,
	silences: Iterable[Tuple[float, float]],
	min_segment: Optional[float] = None,
) -> List[SpeechSegment]:
	"""Complement of the silence intervals over [0, duration], dropping short blips."""
	min_segment = settings.min_segment_seconds if min_segment is None else min_segment
	duration = max(0.0, float(duration))

	spans: List[Tuple[float, float]] = []
	cursor = 0.0
	for s_start, s_end in sorted(silences):
		s_start = min(max(0.0, s_start), duration)
		s_end = min(max(0.0, s_end), duration)
		if s_start > cursor:
			spans.append((cursor, s_start))
		cursor = max(cursor, s_end)
	if cursor < duration:
		spans.append((cursor, duration))

	return [
		SpeechSegment(start=start, end=end)
		for start, end in spans
		if end > start and end - start >= min_segment
	]


def segment_speech(
	asset: AudioAsset,
	*,
	threshold_db: Optional[float] = None,
	min_silence: Optional[float] = None,
	min_segment: Optional[float] = None,
) -> List[SpeechSegment]:
	silences = detect_silences(asset, threshold_db, min_silence)
	segments = build_speech_segments(asset.duration, silences, min_segment)
	logger.info(
		"VAD: %d silence interval(s), %d speech segment(s), %.2fs of speech",
		len(silences), len(segments), total_speech(segments),
	)
	return segments


def total_speech(segments: Sequence[SpeechSegment]) -> float:
	return float(sum(s.duration for s in segments))
