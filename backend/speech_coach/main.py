import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse, RedirectResponse

from .errors import SpeechScoringError
from .settings import settings
from .routers import health
from .routers import speech

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = FastAPI(title="Speech Coach API")
app.include_router(health.router)
app.include_router(speech.router)


@app.exception_handler(SpeechScoringError)
async def speech_error_handler(request: Request, exc: SpeechScoringError):
	if exc.status_code >= 500:
		logger.warning("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
	headers = {"Retry-After": "5"} if exc.retryable else None
	return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
	return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
	# Malformed requests are input errors, same as a missing audio field
	first = exc.errors()[0] if exc.errors() else {}
	where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
	message = f"Invalid request: {where} {first.get('msg', '')}".strip()
	return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
	logger.exception("Unhandled error on %s %s", request.method, request.url.path)
	return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/", include_in_schema=False)
async def redirect_root_to_docs():
	return RedirectResponse(url="/docs")
