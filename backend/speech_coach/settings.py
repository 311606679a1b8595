from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
	# Optional: lighter model for practice script generation
	gemini_model_script: str | None = Field(default=None, validation_alias="GEMINI_MODEL_SCRIPT")
	# Vertex configuration
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# OpenRouter fallback for plain text generation (never used for scoring)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="x-ai/grok-4-fast:free", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Speech Coach", validation_alias="OPENROUTER_TITLE")

	# Speech-to-text
	speech_language: str = Field(default="en-US", validation_alias="SPEECH_LANGUAGE")
	speech_model: str = Field(default="default", validation_alias="SPEECH_MODEL")

	# "formula" scores locally, "llm" delegates to the reasoning model
	scoring_strategy: str = Field(default="formula", validation_alias="SCORING_STRATEGY")

	# Audio normalization and voice activity
	target_sample_rate: int = Field(default=16000, validation_alias="TARGET_SAMPLE_RATE")
	min_audio_seconds: float = Field(default=5.0, validation_alias="MIN_AUDIO_SECONDS")
	silence_threshold_db: float = Field(default=-35.0, validation_alias="SILENCE_THRESHOLD_DB")
	min_silence_seconds: float = Field(default=0.2, validation_alias="MIN_SILENCE_SECONDS")
	min_segment_seconds: float = Field(default=0.8, validation_alias="MIN_SEGMENT_SECONDS")
	ffmpeg_binary: str = Field(default="ffmpeg", validation_alias="FFMPEG_BINARY")
	ffprobe_binary: str = Field(default="ffprobe", validation_alias="FFPROBE_BINARY")

	# Scoring heuristics
	syllables_per_word: float = Field(default=1.4, validation_alias="SYLLABLES_PER_WORD")
	pause_threshold_seconds: float = Field(default=0.2, validation_alias="PAUSE_THRESHOLD_SECONDS")
	articulation_rate_scale: float = Field(default=25.0, validation_alias="ARTICULATION_RATE_SCALE")
	articulation_center: float = Field(default=50.0, validation_alias="ARTICULATION_CENTER")
	articulation_steepness: float = Field(default=0.1, validation_alias="ARTICULATION_STEEPNESS")
	disfluency_center: float = Field(default=50.0, validation_alias="DISFLUENCY_CENTER")
	disfluency_steepness: float = Field(default=0.02, validation_alias="DISFLUENCY_STEEPNESS")
	default_asr_confidence: float = Field(default=0.7, validation_alias="DEFAULT_ASR_CONFIDENCE")
	default_prosody_score: float = Field(default=65.0, validation_alias="DEFAULT_PROSODY_SCORE")

	# Upstream call policy (transcription and reasoning services)
	upstream_concurrency: int = Field(default=4, validation_alias="UPSTREAM_CONCURRENCY")
	transcription_timeout_seconds: float = Field(default=45.0, validation_alias="TRANSCRIPTION_TIMEOUT_SECONDS")
	scoring_timeout_seconds: float = Field(default=30.0, validation_alias="SCORING_TIMEOUT_SECONDS")
	upstream_retries: int = Field(default=2, validation_alias="UPSTREAM_RETRIES")
	retry_base_delay_seconds: float = Field(default=0.4, validation_alias="RETRY_BASE_DELAY_SECONDS")
	retry_jitter_seconds: float = Field(default=0.15, validation_alias="RETRY_JITTER_SECONDS")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
