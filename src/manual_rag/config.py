"""
config.py — Centralized settings
Uses pydantic-settings to read from .env and the environment, validate types,
and provide defaults.

API keys are NOT settings: each provider SDK reads its own variable
(ANTHROPIC_API_KEY, OPENAI_API_KEY, OPENROUTER_API_KEY, DEEPSEEK_API_KEY).

Usage:
    from manual_rag.config import get_settings
    settings = get_settings()
    print(settings.GENERATOR_PRESET)
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    # Answer generation
    GENERATOR_PRESET: str = Field(
        default="claude",
        description="Model preset used for answers (see generator.PRESETS)",
    )
    GENERATION_TIMEOUT: float = Field(
        default=30.0, gt=0,
        description="Seconds to wait for one answer before giving up",
    )
    MAX_OUTPUT_TOKENS: int = Field(default=1024, gt=0)
    TEMPERATURE: float = Field(default=0.0, ge=0.0, le=2.0)

    # Chunking and retrieval
    CHUNK_PROFILE: Literal["default", "large"] = Field(
        default="default",
        description="Chunk size profile: 'default' (~400 tokens) or 'large'",
    )
    RETRIEVAL_TOP_K: int = Field(
        default=5, gt=0,
        description="Number of chunks passed to the model per question",
    )

    # NLP models
    EMBEDDING_BACKEND: Literal["spacy", "sentence-transformers", "none"] = Field(
        default="spacy",
        description="Word vector source for semantic scoring",
    )
    EMBEDDING_MODEL: str | None = Field(
        default=None,
        description="Model for EMBEDDING_BACKEND; the backend's default when unset",
    )
    SPACY_MODEL: str = Field(
        default="en_core_web_sm",
        description="spaCy pipeline used for part-of-speech tagging",
    )

    # Storage
    DATABASE_URL: str = Field(default="sqlite:///manual_rag.db")

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_DIR: str = Field(default="./logs")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
