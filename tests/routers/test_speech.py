import pytest
from fastapi.testclient import TestClient
from google.api_core import exceptions as google_exceptions

from speech_coach.main import app
from speech_coach.pipeline.runner import get_pipeline
from speech_coach.routers import speech as speech_router
from speech_coach.settings import settings


@pytest.fixture
def client():
	with TestClient(app) as c:
		yield c
	app.dependency_overrides.clear()


@pytest.fixture
def use_backend(make_pipeline):
	def _use(backend):
		pipeline = make_pipeline(backend)
		app.dependency_overrides[get_pipeline] = lambda: pipeline
		return pipeline

	return _use


def _upload(data, name="attempt.wav"):
	return {"audio": (name, data, "audio/wav")}


def test_health(client):
	r = client.get("/health")
	assert r.status_code == 200
	body = r.json()
	assert body["status"] == "ok"
	assert body["service"] == "speech-coach"
	assert body["scoring_strategy"] == settings.scoring_strategy


def test_assess_read_aloud(client, use_backend, fake_backend_cls, make_wav):
	use_backend(fake_backend_cls(text="the quick brown box", confidence=0.9))
	r = client.post(
		"/speech/assess",
		files=_upload(make_wav(7.0, speech=[(0.3, 6.5)])),
		data={"referenceText": "the quick brown fox", "language": "en-US"},
	)
	assert r.status_code == 200, r.text
	body = r.json()
	assert body["ok"] is True
	assert body["mode"] == "read-aloud"
	assert body["alignment"]["stats"] == {"S": 1, "D": 0, "I": 0, "M": 3}
	assert body["alignment"]["WER_adjusted"] == pytest.approx(0.25)
	assert body["scores"]["INT"] == pytest.approx(75)
	assert set(body["scores"]["weights"]) == {"SEG", "PROS", "FLU", "INT"}
	assert body["feedback"]["exampleWordsStress"] == ["fox"]
	assert body["qc"]["sample_rate"] == 16000
	assert body["words"][0]["text"] == "the"


def test_assess_free_speech(client, use_backend, fake_backend_cls, make_wav):
	use_backend(fake_backend_cls(text="I like music"))
	r = client.post("/speech/assess", files=_upload(make_wav(6.0)))
	assert r.status_code == 200, r.text
	assert r.json()["mode"] == "free"


def test_missing_audio_is_400(client, use_backend, fake_backend_cls):
	backend = fake_backend_cls()
	use_backend(backend)
	r = client.post("/speech/assess", data={"referenceText": "hello"})
	assert r.status_code == 400
	assert "audio" in r.json()["error"]
	assert backend.calls == 0


def test_empty_audio_is_400(client, use_backend, fake_backend_cls):
	use_backend(fake_backend_cls())
	r = client.post("/speech/assess", files=_upload(b""))
	assert r.status_code == 400
	assert "empty" in r.json()["error"]


def test_short_audio_is_400(client, use_backend, fake_backend_cls, make_wav):
	backend = fake_backend_cls(text="never")
	use_backend(backend)
	r = client.post("/speech/assess", files=_upload(make_wav(3.0)))
	assert r.status_code == 400
	assert "too short" in r.json()["error"]
	assert backend.calls == 0


def test_garbage_audio_is_400(client, use_backend, fake_backend_cls):
	use_backend(fake_backend_cls())
	r = client.post("/speech/assess", files=_upload(b"this is not audio" * 40, name="notes.txt"))
	assert r.status_code == 400
	assert r.json()["error"].startswith("Failed to decode audio")


def test_transcription_outage_is_503_with_retry_after(client, use_backend, fake_backend_cls, make_wav):
	use_backend(fake_backend_cls(errors=[google_exceptions.ServiceUnavailable("down")] * 5))
	r = client.post("/speech/assess", files=_upload(make_wav(6.0)))
	assert r.status_code == 503
	assert r.headers["retry-after"] == "5"
	assert "Transcription" in r.json()["error"]


def test_align_endpoint(client):
	r = client.post("/speech/align", json={"referenceText": "the quick brown fox", "transcript": "the quick brown box"})
	assert r.status_code == 200
	body = r.json()
	assert body["refWords"] == ["the", "quick", "brown", "fox"]
	assert body["phonemeErrorRate"] == pytest.approx(1 / 15)
	assert "normGOPerr" in body


def test_align_requires_transcript(client):
	r = client.post("/speech/align", json={"referenceText": "hello"})
	assert r.status_code == 400
	assert "transcript" in r.json()["error"]


class FakeScriptClient:
	reply = "Line one.\nLine two."
	error = None
	prompts = []

	def __init__(self, *args, **kwargs):
		pass

	async def generate(self, prompt, *, system=None, temperature=None, allow_fallback=True):
		FakeScriptClient.prompts.append(prompt)
		if self.error:
			raise self.error
		return self.reply

	async def aclose(self):
		pass


@pytest.fixture
def script_client(monkeypatch):
	FakeScriptClient.reply = "Line one.\nLine two."
	FakeScriptClient.error = None
	FakeScriptClient.prompts = []
	monkeypatch.setattr(speech_router, "GeminiClient", FakeScriptClient)
	return FakeScriptClient


def test_script_generation(client, script_client):
	r = client.post("/speech/script", json={"category": "Travel", "sentences": 50})
	assert r.status_code == 200
	assert r.json() == {"ok": True, "text": "Line one.\nLine two."}
	assert "Exactly 20 sentences" in script_client.prompts[0]
	assert "Travel" in script_client.prompts[0]


def test_script_upstream_failure_is_503(client, script_client):
	script_client.error = RuntimeError("quota")
	r = client.post("/speech/script", json={})
	assert r.status_code == 503


def test_script_empty_reply_is_502(client, script_client):
	script_client.reply = "   "
	r = client.post("/speech/script", json={})
	assert r.status_code == 502


def test_script_without_key_is_503(client, monkeypatch):
	monkeypatch.setattr(settings, "gemini_api_key", None)
	r = client.post("/speech/script", json={})
	assert r.status_code == 503
	assert "GEMINI_API_KEY" in r.json()["error"]
