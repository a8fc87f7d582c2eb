"""
Application configuration via environment variables.

Read once at startup and never mutated afterwards. Every setting can be
overridden with a ``RENALSCAN_``-prefixed environment variable or a ``.env``
file.
"""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings

from renalscan.models.schemas import DecisionPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment / .env file."""

    # App
    app_name: str = "RenalScan"
    debug: bool = False

    # CORS
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:9002",
    ]

    # Model endpoint (any OpenAI-compatible chat completions API)
    model_id: str = "gemini-1.5-flash-latest"
    api_key: str = ""
    base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    max_tokens: int = 1024
    temperature: float = 0.2
    request_timeout_seconds: float = Field(30.0, gt=0)
    fold_system_prompt: bool = False  # for backends that reject the system role
    structured_output: bool = True    # send response_format with the JSON schema

    # Analysis pipeline
    low_confidence_threshold: float = Field(0.5, ge=0.0, le=1.0)
    decision_policy: DecisionPolicy = DecisionPolicy.FIRST_MATCH
    include_analytics: bool = False
    analytics_focus: str = "Summarize the key observations relevant to the diagnosis."

    # Image input
    max_upload_bytes: int = 10 * 1024 * 1024
    allow_remote_images: bool = True         # let /api/scans/analyze-uri fetch http(s) URLs
    allow_private_image_hosts: bool = False  # loopback, private and link-local hosts

    model_config = {
        "env_prefix": "RENALSCAN_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "protected_namespaces": (),
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
