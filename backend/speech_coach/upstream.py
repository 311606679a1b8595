"""
Shared policy for calls to upstream services (speech-to-text, Gemini).

``UpstreamGate`` bounds how many upstream calls run at once and lets
concurrent requests for identical work share a single in-flight call.
``call_with_retry`` wraps one call with a timeout and exponential backoff
with jitter for transient failures.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP statuses worth retrying: rate limiting and server-side failures
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


def content_key(*parts: Any) -> str:
	"""Stable sha1 key over bytes/str parts, used for in-flight de-duplication."""
	h = hashlib.sha1()
	for part in parts:
		if isinstance(part, bytes):
			h.update(part)
		else:
			h.update(str(part).encode("utf-8"))
		h.update(b"\x00")
	return h.hexdigest()


class UpstreamGate:
	"""Bounded worker pool plus an in-flight map keyed by content hash."""

	def __init__(self, concurrency: int = 4) -> None:
		if concurrency < 1:
			raise ValueError("concurrency must be >= 1")
		self.concurrency = concurrency
		self._semaphore: Optional[asyncio.Semaphore] = None
		self._lock: Optional[asyncio.Lock] = None
		self._inflight: Dict[str, asyncio.Task] = {}
		self._active = 0

	def _primitives(self) -> tuple[asyncio.Semaphore, asyncio.Lock]:
		# Created lazily so the gate can be built outside a running loop
		if self._semaphore is None:
			self._semaphore = asyncio.Semaphore(self.concurrency)
			self._lock = asyncio.Lock()
		return self._semaphore, self._lock  # type: ignore[return-value]

	@property
	def active(self) -> int:
		return self._active

	@property
	def inflight(self) -> int:
		return len(self._inflight)

	async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
		"""Run ``fn`` once a slot is free."""
		semaphore, _ = self._primitives()
		async with semaphore:
			self._active += 1
			try:
				return await fn()
			finally:
				self._active -= 1

	async def run_shared(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
		"""Run ``fn`` under the gate, joining an identical call already in flight."""
		_, lock = self._primitives()
		async with lock:
			task = self._inflight.get(key)
			if task is None:
				task = asyncio.ensure_future(self.run(fn))
				self._inflight[key] = task
				task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
			else:
				logger.debug("Joining in-flight upstream call %s", key[:12])
		# shield: one caller giving up must not cancel the call for the others
		return await asyncio.shield(task)


def backoff_delay(attempt: int, base_delay: float, jitter: float) -> float:
	"""Delay before retry number ``attempt`` (1-based)."""
	return base_delay * (2 ** (attempt - 1)) + random.uniform(0, jitter)


async def call_with_retry(
	fn: Callable[[], Awaitable[T]],
	*,
	retries: int,
	base_delay: float,
	jitter: float,
	timeout: Optional[float],
	is_retryable: Callable[[BaseException], bool],
	label: str = "upstream",
) -> T:
	"""Call ``fn`` with a per-attempt timeout, retrying transient failures.

	Timeouts count as retryable. Anything ``is_retryable`` rejects is raised
	immediately; after ``retries`` extra attempts the last error is raised.
	With ``timeout=None`` the deadline is left to ``fn`` (blocking work in a
	thread, where ``wait_for`` would only abandon the await).
	"""
	attempt = 0
	while True:
		attempt += 1
		try:
			if timeout is None:
				return await fn()
			return await asyncio.wait_for(fn(), timeout=timeout)
		except asyncio.TimeoutError as err:
			if attempt > retries:
				logger.error("%s timed out after %d attempt(s)", label, attempt)
				raise
			error: BaseException = err
		except Exception as err:
			if not is_retryable(err) or attempt > retries:
				raise
			error = err
		delay = backoff_delay(attempt, base_delay, jitter)
		logger.warning("%s attempt %d failed (%s); retrying in %.2fs", label, attempt, str(error) or type(error).__name__, delay)
		await asyncio.sleep(delay)
