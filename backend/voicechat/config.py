"""
Configuration management using Pydantic Settings.
Loads all environment variables with validation.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Literal, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses .env file in development, environment variables in production.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # OpenAI (response generation + speech synthesis)
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key for chat completions and text-to-speech"
    )
    openai_model: str = Field(
        default="gpt-4o",
        description="Chat model used to answer questions about the meeting"
    )
    openai_temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for chat completions"
    )
    openai_max_tokens: int = Field(
        default=500,
        ge=16,
        le=4096,
        description="Upper bound for a single spoken answer"
    )
    tts_model: str = Field(
        default="tts-1",
        description="OpenAI speech model"
    )
    tts_voice: str = Field(
        default="nova",
        description="OpenAI speech voice"
    )
    tts_format: str = Field(
        default="mp3",
        description="Audio container returned to the client for playback"
    )

    # Deepgram (speech-to-text)
    deepgram_api_key: Optional[str] = Field(
        default=None,
        description="Deepgram API key for live speech recognition"
    )
    stt_model: str = Field(
        default="nova-2",
        description="Deepgram model for live transcription"
    )
    stt_language: str = Field(
        default="tr",
        description="Fixed recognition locale"
    )
    stt_encoding: str = Field(
        default="linear16",
        description="Encoding of the microphone chunks sent by the client"
    )
    stt_sample_rate: int = Field(
        default=16000,
        ge=8000,
        le=48000,
        description="Sample rate of the microphone chunks in Hz"
    )

    # Turn-taking timing
    silence_timeout_ms: int = Field(
        default=3000,
        ge=10,
        le=10000,
        description="Quiet period after the last final fragment that ends a user turn"
    )
    restart_delay_ms: int = Field(
        default=100,
        ge=0,
        le=5000,
        description="Delay before restarting a recognition session that ended on its own"
    )
    wake_restart_delay_ms: int = Field(
        default=50,
        ge=0,
        le=5000,
        description="Restart delay while passively listening for the wake phrase"
    )
    quiet_period_ms: int = Field(
        default=30000,
        ge=0,
        description="Without fragments for this long, restarts are slowed down"
    )
    quiet_restart_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Restart delay multiplier applied after a quiet period"
    )
    max_restart_attempts: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Bare restarts allowed before the engine is recreated"
    )
    resume_listening_delay_ms: int = Field(
        default=500,
        ge=0,
        le=5000,
        description="Pause after assistant speech before the microphone is re-armed"
    )
    farewell_grace_ms: int = Field(
        default=1500,
        ge=0,
        le=10000,
        description="Time the farewell gets to play before the session is torn down"
    )
    interim_resets_silence: bool = Field(
        default=False,
        description="Let interim fragments re-arm the silence timer as well"
    )
    termination_during_response: Literal["ignore", "cancel"] = Field(
        default="ignore",
        description="What a termination phrase does while the assistant is thinking/speaking"
    )

    # Spoken texts
    greeting_text: str = Field(
        default=(
            "Merhaba! Ben EnerwiseAi. Toplantı hakkında sorularınız varsa "
            "yanıtlamaktan memnuniyet duyarım."
        ),
        description="Spoken when a voice chat session starts"
    )
    farewell_text: str = Field(
        default="Toplantı notlarını hazırlıyorum, iyi günler!",
        description="Spoken when the conversation is ended"
    )
    apology_text: str = Field(
        default="Üzgünüm, bir hata oluştu.",
        description="Assistant turn emitted when response generation fails"
    )

    # Phrase sets (lowercase surface forms, matched by substring)
    wake_phrases: List[str] = Field(
        default=[
            "hey asistan",
            "hey assistant",
            "heyasistan",
            "he asistan",
            "merhaba asistan",
            "hey asis",
            "heyasis",
        ],
        description="Accepted surface forms of the wake phrase"
    )
    termination_phrases: List[str] = Field(
        default=[
            "görüşürüz",
            "gorusuruz",
            "toplantıyı bitir",
            "toplantiyi bitir",
        ],
        description="Accepted surface forms of the termination phrase"
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, or production"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    # Server Settings
    host: str = Field(
        default="0.0.0.0",
        description="Server host address"
    )
    port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="Server port"
    )

    # CORS
    frontend_url: str = Field(
        default="http://localhost:5173",
        description="Frontend URL for CORS"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of the allowed values."""
        allowed = ["development", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    @field_validator("wake_phrases", "termination_phrases")
    @classmethod
    def validate_phrases(cls, v: List[str]) -> List[str]:
        """Store phrases normalized and reject empty sets."""
        phrases = [p.lower().strip() for p in v if p and p.strip()]
        if not phrases:
            raise ValueError("phrase set must contain at least one phrase")
        return phrases

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
