"""Runtime settings for the Bios triage engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def _safety_threshold(value: str | None) -> str:
    if not value:
        return "BLOCK_MEDIUM_AND_ABOVE"
    token = value.strip().upper().replace("-", "_")
    mapping = {
        "BLOCK_LOW_AND_ABOVE": "BLOCK_LOW_AND_ABOVE",
        "LOW": "BLOCK_LOW_AND_ABOVE",
        "BLOCK_MEDIUM_AND_ABOVE": "BLOCK_MEDIUM_AND_ABOVE",
        "MEDIUM": "BLOCK_MEDIUM_AND_ABOVE",
        "DEFAULT": "BLOCK_MEDIUM_AND_ABOVE",
        "BLOCK_ONLY_HIGH": "BLOCK_ONLY_HIGH",
        "HIGH": "BLOCK_ONLY_HIGH",
    }
    return mapping.get(token, "BLOCK_MEDIUM_AND_ABOVE")


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    app_name: str = field(default_factory=lambda: os.getenv("BIOTRIAGE_APP_NAME", "biotriage-api"))

    gemini_model: str = field(
        default_factory=lambda: os.getenv("BIOTRIAGE_GEMINI_MODEL", "gemini-1.5-flash")
    )
    gemini_api_key: str | None = field(
        default_factory=lambda: _first_env(
            "GEMINI_API_KEY",
            "Gemini_API_Key",
            "GOOGLE_API_KEY",
            "gemini_api_key",
        )
    )
    gemini_base_url: str = field(
        default_factory=lambda: os.getenv(
            "BIOTRIAGE_GEMINI_BASE_URL",
            "https://generativelanguage.googleapis.com",
        )
    )

    # Assessment call limits.
    request_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("BIOTRIAGE_REQUEST_TIMEOUT_SEC", "10"))
    )
    max_retries: int = field(default_factory=lambda: int(os.getenv("BIOTRIAGE_MAX_RETRIES", "3")))
    retry_backoff_sec: float = field(
        default_factory=lambda: float(os.getenv("BIOTRIAGE_RETRY_BACKOFF_SEC", "0.5"))
    )
    retry_backoff_max_sec: float = field(
        default_factory=lambda: float(os.getenv("BIOTRIAGE_RETRY_BACKOFF_MAX_SEC", "4"))
    )

    # Generation parameters. Low temperature keeps verdicts consistent.
    max_output_tokens: int = field(
        default_factory=lambda: int(os.getenv("BIOTRIAGE_MAX_OUTPUT_TOKENS", "500"))
    )
    temperature: float = field(default_factory=lambda: float(os.getenv("BIOTRIAGE_TEMPERATURE", "0.3")))
    top_k: int = field(default_factory=lambda: int(os.getenv("BIOTRIAGE_TOP_K", "40")))
    top_p: float = field(default_factory=lambda: float(os.getenv("BIOTRIAGE_TOP_P", "0.9")))

    safety_threshold: str = field(
        default_factory=lambda: _safety_threshold(os.getenv("BIOTRIAGE_SAFETY_THRESHOLD"))
    )
    safety_categories: tuple[str, ...] = SAFETY_CATEGORIES

    # Persistence
    persist_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("BIOTRIAGE_PERSIST_TIMEOUT_SEC", "5"))
    )
    local_storage_dir: str = field(
        default_factory=lambda: os.getenv("BIOTRIAGE_LOCAL_STORAGE_DIR", ".biotriage_local_store")
    )


def get_settings() -> Settings:
    return Settings()
