from datetime import datetime, timezone

from fastapi import APIRouter

from ..settings import settings

router = APIRouter(tags=["health"])

SERVICE_NAME = "speech-coach"


@router.get("/health")
def health():
	return {
		"status": "ok",
		"service": SERVICE_NAME,
		"language": settings.speech_language,
		"scoring_strategy": settings.scoring_strategy,
		"gemini_configured": bool(settings.gemini_api_key),
		"time": datetime.now(timezone.utc).isoformat(),
	}
