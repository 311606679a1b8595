"""
Audio normalization: decode an upload into mono PCM at a fixed sample rate.

WAV/FLAC/OGG are decoded in-process with soundfile. Anything else (webm,
mp3, m4a from browsers) is transcoded to WAV by ffmpeg first, keeping the
source rate and channel layout; the downmix and resample steps below are
always ours.

Known limitations:
- Downmix is a plain per-sample average of channels ((L+R)/2 for stereo).
  Phase-cancelled content between channels is lost.
- Resampling is linear interpolation between neighbouring samples, not a
  band-limited resampler. Good enough for speech bandwidth; extreme rate
  ratios alias slightly.
"""

from __future__ import annotations

import io
import json
import logging
import os
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import numpy as np
import soundfile as sf

from ..errors import DecodeError, TooShortError
from ..models import QualityControl
from ..settings import settings

logger = logging.getLogger(__name__)


class AudioAsset:
	"""Normalized mono waveform plus the metadata of the upload it came from.

	Attributes:
		samples: mono float32 samples in [-1, 1]
		sample_rate: rate of ``samples`` (the normalization target)
		source_rate: sample rate of the upload before resampling
		channels: channel count of the upload before downmixing
		codec: source codec (ffprobe codec name or libsndfile subtype)
		format: source container
	"""

	def __init__(
		self,
		samples: np.ndarray,
		sample_rate: int,
		*,
		source_rate: Optional[int] = None,
		channels: int = 1,
		codec: Optional[str] = None,
		format: Optional[str] = None,
	) -> None:
		self.samples = np.asarray(samples, dtype=np.float32)
		self.sample_rate = int(sample_rate)
		self.source_rate = int(source_rate or sample_rate)
		self.channels = int(channels)
		self.codec = codec
		self.format = format

	@property
	def duration(self) -> float:
		if self.sample_rate <= 0:
			return 0.0
		return len(self.samples) / float(self.sample_rate)

	def qc(self) -> QualityControl:
		return QualityControl(
			duration=round(self.duration, 3),
			sample_rate=self.sample_rate,
			channels=self.channels,
			codec=self.codec,
			format=self.format,
		)

	def to_wav_bytes(self) -> bytes:
		buf = io.BytesIO()
		sf.write(buf, self.samples, self.sample_rate, format="WAV", subtype="PCM_16")
		return buf.getvalue()


def downmix(frames: np.ndarray) -> np.ndarray:
	"""Average a (frames, channels) array to mono."""
	if frames.ndim == 1:
		return frames.astype(np.float32)
	if frames.shape[1] == 1:
		return frames[:, 0].astype(np.float32)
	return frames.mean(axis=1).astype(np.float32)


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
	"""Linear-interpolation resampling; identity when the rates match."""
	if source_rate == target_rate or len(samples) == 0:
		return samples.astype(np.float32)
	n_out = int(round(len(samples) * target_rate / float(source_rate)))
	if n_out <= 0:
		return np.zeros(0, dtype=np.float32)
	t_in = np.arange(len(samples), dtype=np.float64) / source_rate
	t_out = np.arange(n_out, dtype=np.float64) / target_rate
	return np.interp(t_out, t_in, samples).astype(np.float32)


def _read_soundfile(data: bytes) -> Tuple[np.ndarray, int, str, str]:
	info = sf.info(io.BytesIO(data))
	frames, rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
	return frames, int(rate), info.subtype, info.format


def _probe(path: str) -> Tuple[Optional[str], Optional[str]]:
	cmd = [
		settings.ffprobe_binary,
		"-v", "quiet",
		"-print_format", "json",
		"-show_streams",
		"-show_format",
		path,
	]
	try:
		result = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
	except (FileNotFoundError, subprocess.TimeoutExpired) as e:
		logger.warning("ffprobe unavailable: %s", e)
		return None, None
	if result.returncode != 0:
		return None, None
	try:
		data = json.loads(result.stdout)
	except json.JSONDecodeError:
		return None, None
	stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "audio"), {})
	fmt = data.get("format", {})
	return stream.get("codec_name"), fmt.get("format_name")


def _read_with_ffmpeg(data: bytes) -> Tuple[np.ndarray, int, Optional[str], Optional[str]]:
	with tempfile.TemporaryDirectory(prefix="speech_coach_") as workdir:
		src = os.path.join(workdir, "upload.bin")
		dst = os.path.join(workdir, "decoded.wav")
		with open(src, "wb") as fh:
			fh.write(data)
		codec, container = _probe(src)
		# -vn drops video; no -ar/-ac so rate and channels are preserved
		cmd = [
			settings.ffmpeg_binary,
			"-y",
			"-hide_banner",
			"-loglevel", "error",
			"-i", src,
			"-vn",
			"-acodec", "pcm_s16le",
			"-f", "wav",
			dst,
		]
		try:
			subprocess.run(cmd, check=True, stdin=subprocess.DEVNULL, capture_output=True, timeout=60)
		except FileNotFoundError:
			raise DecodeError("ffmpeg is not installed and the upload is not WAV/FLAC/OGG")
		except subprocess.TimeoutExpired:
			raise DecodeError("ffmpeg timed out")
		except subprocess.CalledProcessError as e:
			error_msg = e.stderr.decode(errors="replace").strip() if e.stderr else str(e)
			logger.info("ffmpeg could not decode upload: %s", error_msg)
			raise DecodeError(error_msg.splitlines()[-1] if error_msg else "ffmpeg failed")
		frames, rate = sf.read(dst, dtype="float32", always_2d=True)
	return frames, int(rate), codec, container


def decode_audio(data: bytes) -> Tuple[np.ndarray, int, Optional[str], Optional[str]]:
	"""Decode container bytes to a (frames, channels) float32 array and its rate."""
	if not data:
		raise DecodeError("empty upload")
	try:
		return _read_soundfile(data)
	except (sf.SoundFileError, RuntimeError, TypeError) as e:
		logger.debug("soundfile could not read upload (%s); trying ffmpeg", e)
	try:
		return _read_with_ffmpeg(data)
	except (sf.SoundFileError, RuntimeError) as e:
		raise DecodeError(str(e))


def normalize_audio(
	data: bytes,
	*,
	target_rate: Optional[int] = None,
	min_duration: Optional[float] = None,
) -> AudioAsset:
	"""Decode, downmix and resample an upload; reject clips shorter than ``min_duration``.

	Raises:
		DecodeError: the bytes are not decodable audio
		TooShortError: the decoded clip is shorter than the minimum
	"""
	target_rate = target_rate or settings.target_sample_rate
	min_duration = settings.min_audio_seconds if min_duration is None else min_duration

	frames, source_rate, codec, container = decode_audio(data)
	if frames.size == 0 or source_rate <= 0:
		raise DecodeError("no audio frames")
	channels = frames.shape[1]
	mono = downmix(frames)
	samples = resample_linear(mono, source_rate, target_rate)
	asset = AudioAsset(
		samples,
		target_rate,
		source_rate=source_rate,
		channels=channels,
		codec=codec,
		format=container,
	)
	logger.info(
		"Normalized audio: %.2fs, %d ch @ %d Hz -> mono @ %d Hz (%s)",
		asset.duration, channels, source_rate, target_rate, codec or "unknown codec",
	)
	if asset.duration < min_duration:
		raise TooShortError(asset.duration, min_duration)
	return asset


@contextmanager
def scoped_wav(asset: AudioAsset) -> Iterator[str]:
	"""Write the asset to a temporary PCM16 WAV; the file is removed on every exit path."""
	fd, path = tempfile.mkstemp(prefix="speech_coach_", suffix=".wav")
	try:
		with os.fdopen(fd, "wb") as fh:
			fh.write(asset.to_wav_bytes())
		yield path
	finally:
		try:
			os.unlink(path)
		except FileNotFoundError:
			pass
