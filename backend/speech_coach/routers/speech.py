"""
Speech Assessment Module
========================

HTTP surface of the speech-scoring pipeline.

API Endpoints:
- POST /speech/assess: score an uploaded recording (read-aloud or free speech)
- POST /speech/align: word/phoneme alignment of two texts, no audio
- POST /speech/script: generate a read-aloud practice script
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field

from ..errors import InputError
from ..gemini_client import GeminiClient
from ..models import AlignmentResult, AssessmentResult
from ..pipeline.aligner import align
from ..pipeline.runner import SpeechPipeline, get_pipeline
from ..settings import settings


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/speech", tags=["speech"])

# ============================================================================
# REQUEST MODELS
# ============================================================================

class AlignRequest(BaseModel):
	referenceText: Optional[str] = Field(default=None, description="Target text; omit for free-form alignment")
	transcript: str


class ScriptRequest(BaseModel):
	"""
	Request model for generating a read-aloud practice script.
	"""
	category: str = "General"
	topicHint: str = "Introduce yourself and your goals."
	sentences: int = 5
	length: str = Field(default="short", description="short | medium | long")
	level: str = "A2-B1"


class ScriptResponse(BaseModel):
	ok: bool = True
	text: str


LENGTH_GUIDES = {
	"short": "concise sentences (8-14 words)",
	"medium": "moderate sentences (12-20 words)",
	"long": "richer sentences (18-28 words)",
}


def _build_script_prompt(req: ScriptRequest, sentences: int) -> str:
	length_hint = LENGTH_GUIDES.get(req.length, LENGTH_GUIDES["short"])
	return f"""
Create an English speaking script for category: {req.category}.
Topic hint: {req.topicHint}.
Target level: {req.level}.
Constraints:
- Exactly {sentences} sentences.
- Use {length_hint}.
- Everyday vocabulary and natural flow.
- Avoid special characters or markdown.

Return only the {sentences} sentences on separate lines.
""".strip()


SCRIPT_SYSTEM = (
	"You are an expert ESL speaking coach. Generate a clean, plain-English practice script "
	"for learners to read aloud. Output plain text only, with line breaks between sentences, "
	"no numbering or extra commentary."
)


# ============================================================================
# API ENDPOINTS
# ============================================================================

@router.post("/assess", response_model=AssessmentResult)
async def assess(
	audio: Optional[UploadFile] = File(default=None),
	referenceText: Optional[str] = Form(default=None),
	language: str = Form(default="en-US"),
	pipeline: SpeechPipeline = Depends(get_pipeline),
):
	"""Score a spoken recording.

	With ``referenceText`` the attempt is scored as read-aloud against that
	text; without it the attempt is free speech and only fluency and
	intelligibility signals are meaningful.

	Raises:
		InputError: missing or empty ``audio`` field (400)
		DecodeError / TooShortError: unusable recording (400)
		TranscriptionUnavailable / ScoringUnavailable: upstream failure (503)
	"""
	if audio is None:
		raise InputError("Missing audio file (field: audio)")
	data = await audio.read()
	if not data:
		raise InputError("Uploaded audio file is empty")
	logger.info(
		"Assess request: %s (%d bytes, %s), reference=%s",
		audio.filename, len(data), audio.content_type, bool(referenceText and referenceText.strip()),
	)
	return await pipeline.assess(data, reference_text=referenceText, language=language)


@router.post("/align", response_model=AlignmentResult)
async def align_texts(req: AlignRequest):
	return align(req.referenceText, req.transcript)


@router.post("/script", response_model=ScriptResponse)
async def generate_script(req: ScriptRequest):
	sentences = max(1, min(20, req.sentences))
	try:
		client = GeminiClient(model=settings.gemini_model_script or settings.gemini_model)
	except ValueError as e:
		raise HTTPException(status_code=503, detail=str(e))
	try:
		text = await client.generate(
			_build_script_prompt(req, sentences),
			system=SCRIPT_SYSTEM,
			temperature=0.7,
		)
	except Exception as e:
		logger.error("Script generation failed: %s", e)
		raise HTTPException(status_code=503, detail="Script generation is temporarily unavailable")
	finally:
		await client.aclose()
	text = (text or "").strip()
	if not text:
		raise HTTPException(status_code=502, detail="Gemini returned empty script")
	return ScriptResponse(text=text)
