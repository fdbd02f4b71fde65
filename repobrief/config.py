# repobrief/config.py

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# LOAD .env FILE
load_dotenv()


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    gemini_api_key: Optional[str]
    gemini_model: str = "gemini-2.5-flash"
    gemini_embedding_model: str = "models/text-embedding-004"
    github_token: Optional[str] = None
    log_level: str = "INFO"
    ingest_delay_seconds: float = 0.0


def load_settings() -> Settings:
    """Read settings from the environment (and .env, loaded at import)."""
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        gemini_api_key=os.getenv("GEMINI_API_KEY"),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        gemini_embedding_model=os.getenv("GEMINI_EMBEDDING_MODEL", "models/text-embedding-004"),
        github_token=os.getenv("GITHUB_TOKEN") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        ingest_delay_seconds=float(os.getenv("INGEST_DELAY_SECONDS", "0") or 0),
    )
