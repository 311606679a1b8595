"""
Error taxonomy for the speech-scoring service.

Every error carries the HTTP status it maps to so the routers and the
exception handlers in ``main`` never have to guess.
"""

from __future__ import annotations


class SpeechScoringError(Exception):
	"""Base class for all pipeline errors."""

	status_code: int = 500
	retryable: bool = False

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message


class InputError(SpeechScoringError):
	"""Missing or empty audio field, malformed request."""

	status_code = 400


class DecodeError(SpeechScoringError):
	"""The codec could not parse the uploaded audio."""

	status_code = 400

	def __init__(self, reason: str = "") -> None:
		message = "Failed to decode audio"
		if reason:
			message += f": {reason}"
		super().__init__(message)
		self.reason = reason


class TooShortError(SpeechScoringError):
	"""Audio decoded fine but is below the minimum duration."""

	status_code = 400

	def __init__(self, duration: float, minimum: float) -> None:
		super().__init__(
			f"Audio is too short ({duration:.2f}s); record at least {minimum:g} seconds"
		)
		self.duration = duration
		self.minimum = minimum


class TranscriptionUnavailable(SpeechScoringError):
	"""Speech-to-text service failed or timed out."""

	status_code = 503
	retryable = True


class ScoringUnavailable(SpeechScoringError):
	"""Reasoning service failed, timed out, or returned an invalid payload."""

	status_code = 503
	retryable = True
