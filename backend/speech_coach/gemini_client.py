from __future__ import annotations
import logging
import httpx
from typing import Any, Dict, Optional, Tuple
from .settings import settings
from .upstream import RETRYABLE_STATUSES, call_with_retry

logger = logging.getLogger(__name__)


class GeminiError(RuntimeError):
	def __init__(self, message: str, status_code: Optional[int] = None) -> None:
		super().__init__(message)
		self.status_code = status_code


def is_retryable_error(err: BaseException) -> bool:
	"""429/5xx responses and transport failures are transient; other 4xx are not."""
	if isinstance(err, httpx.HTTPStatusError):
		return err.response.status_code in RETRYABLE_STATUSES
	if isinstance(err, GeminiError):
		return err.status_code in RETRYABLE_STATUSES
	return isinstance(err, httpx.TransportError)


AI_STUDIO_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
VERTEX_URL = (
	"https://{region}-aiplatform.googleapis.com/v1/projects/{project}"
	"/locations/{region}/publishers/google/models/{model}:generateContent"
)


def resolve_endpoint(model: str) -> Tuple[str, bool]:
	"""generateContent URL for GEMINI_PROVIDER, and whether the key travels in the query string."""
	if settings.gemini_provider == "vertex":
		# Vertex Express: key in the x-goog-api-key header
		url = VERTEX_URL.format(
			region=settings.vertex_region,
			project=settings.vertex_project or "placeholder-project",
			model=model,
		)
		return url, False
	return AI_STUDIO_URL.format(model=model), True


class GeminiClient:
	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		timeout: Optional[float] = None,
		retries: Optional[int] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise ValueError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		default_url, self._key_in_query = resolve_endpoint(self.model)
		self.base_url = base_url or default_url
		self.timeout = timeout if timeout is not None else settings.scoring_timeout_seconds
		self.retries = retries if retries is not None else settings.upstream_retries
		self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)
		# Plain-text fallback for practice scripts; scoring callers pass allow_fallback=False
		self._openrouter: Optional[httpx.AsyncClient] = None
		if settings.openrouter_api_key:
			self._openrouter = httpx.AsyncClient(
				timeout=self.timeout,
				transport=transport,
				headers={
					"Authorization": f"Bearer {settings.openrouter_api_key}",
					"HTTP-Referer": settings.openrouter_referer,
					"X-Title": settings.openrouter_title,
				},
			)

	async def __aenter__(self) -> "GeminiClient":
		return self

	async def __aexit__(self, *exc_info: Any) -> None:
		await self.aclose()

	async def generate(
		self,
		prompt: str,
		*,
		system: Optional[str] = None,
		temperature: Optional[float] = None,
		allow_fallback: bool = True,
	) -> str:
		payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
		if system:
			payload["systemInstruction"] = {"parts": [{"text": system}]}
		if temperature is not None:
			payload["generationConfig"] = {"temperature": temperature}
		return await self._post_payload(
			payload,
			fallback_prompt=prompt if system is None else f"{system}\n\n{prompt}",
			allow_fallback=allow_fallback,
		)

	async def _post_once(self, payload: Dict[str, Any]) -> str:
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._key_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		r = await self._client.post(self.base_url, params=params, headers=headers, json=payload)
		r.raise_for_status()
		try:
			data = r.json()
			return data["candidates"][0]["content"]["parts"][0]["text"]
		except (ValueError, KeyError, IndexError, TypeError):
			raise GeminiError(f"Unexpected Gemini response: {r.text[:500]}")

	async def _post_payload(
		self,
		payload: Dict[str, Any],
		*,
		fallback_prompt: Optional[str],
		allow_fallback: bool = True,
	) -> str:
		try:
			return await call_with_retry(
				lambda: self._post_once(payload),
				retries=self.retries,
				base_delay=settings.retry_base_delay_seconds,
				jitter=settings.retry_jitter_seconds,
				timeout=self.timeout,
				is_retryable=is_retryable_error,
				label=f"gemini:{self.model}",
			)
		except Exception as err:
			logger.error("Gemini call failed: %s", err)
			if not allow_fallback or self._openrouter is None or fallback_prompt is None:
				raise
			return await self._openrouter_generate(fallback_prompt, err)

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._openrouter is not None:
			await self._openrouter.aclose()

	async def _openrouter_generate(self, prompt: str, gemini_error: Exception) -> str:
		"""Single OpenRouter chat completion, without retries."""
		model = settings.openrouter_model
		logger.warning("Generating with OpenRouter model %s instead", model)
		payload = {"model": model, "messages": [{"role": "user", "content": prompt}]}
		try:
			r = await self._openrouter.post(settings.openrouter_base_url, json=payload)
			r.raise_for_status()
			return r.json()["choices"][0]["message"]["content"]
		except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as err:
			raise GeminiError(
				f"Text generation unavailable: Gemini failed ({gemini_error}) and OpenRouter {model} failed ({err})"
			) from err
