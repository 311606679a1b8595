import asyncio

import pytest

from speech_coach.upstream import UpstreamGate, backoff_delay, call_with_retry, content_key


class Transient(Exception):
	pass


class Fatal(Exception):
	pass


def _flaky(failures, result="ok", exc=Transient):
	calls = {"n": 0}

	async def fn():
		calls["n"] += 1
		if calls["n"] <= failures:
			raise exc("boom")
		return result

	return fn, calls


def _retry(fn, **kwargs):
	options = dict(retries=2, base_delay=0, jitter=0, timeout=None, is_retryable=lambda e: isinstance(e, Transient))
	options.update(kwargs)
	return asyncio.run(call_with_retry(fn, **options))


def test_content_key_is_stable_and_part_sensitive():
	assert content_key("stt", "en-US", b"abc") == content_key("stt", "en-US", b"abc")
	assert content_key("stt", "en-US", b"abc") != content_key("stt", "en-GB", b"abc")
	# part boundaries matter
	assert content_key("ab", "c") != content_key("a", "bc")


def test_backoff_grows_exponentially():
	assert backoff_delay(1, 0.5, 0) == 0.5
	assert backoff_delay(3, 0.5, 0) == 2.0
	assert 1.0 <= backoff_delay(2, 0.5, 0.2) <= 1.2


def test_retry_recovers_from_transient_failures():
	fn, calls = _flaky(2)
	assert _retry(fn) == "ok"
	assert calls["n"] == 3


def test_retry_gives_up_after_budget():
	fn, calls = _flaky(5)
	with pytest.raises(Transient):
		_retry(fn, retries=1)
	assert calls["n"] == 2


def test_non_retryable_raises_immediately():
	fn, calls = _flaky(1, exc=Fatal)
	with pytest.raises(Fatal):
		_retry(fn)
	assert calls["n"] == 1


def test_timeouts_are_retried_then_raised():
	calls = {"n": 0}

	async def slow():
		calls["n"] += 1
		await asyncio.sleep(1)

	with pytest.raises(asyncio.TimeoutError):
		_retry(slow, retries=1, timeout=0.01)
	assert calls["n"] == 2


def test_gate_bounds_concurrency():
	gate = UpstreamGate(2)
	peak = {"value": 0}

	async def work():
		peak["value"] = max(peak["value"], gate.active)
		await asyncio.sleep(0.01)
		return gate.active

	async def main():
		return await asyncio.gather(*[gate.run(work) for _ in range(6)])

	asyncio.run(main())
	assert peak["value"] == 2
	assert gate.active == 0


def test_gate_shares_identical_inflight_calls():
	gate = UpstreamGate(4)
	calls = {"n": 0}

	async def work():
		calls["n"] += 1
		await asyncio.sleep(0.02)
		return "done"

	async def main():
		first = await asyncio.gather(*[gate.run_shared("same", work) for _ in range(5)])
		assert gate.inflight == 0
		# a later request for the same key starts a fresh call
		second = await gate.run_shared("same", work)
		return first, second

	first, second = asyncio.run(main())
	assert first == ["done"] * 5
	assert second == "done"
	assert calls["n"] == 2


def test_gate_shares_failures_too():
	gate = UpstreamGate(1)

	async def fail():
		await asyncio.sleep(0.01)
		raise Fatal("nope")

	async def main():
		return await asyncio.gather(*[gate.run_shared("k", fail) for _ in range(3)], return_exceptions=True)

	results = asyncio.run(main())
	assert all(isinstance(r, Fatal) for r in results)


def test_gate_rejects_zero_concurrency():
	with pytest.raises(ValueError):
		UpstreamGate(0)
