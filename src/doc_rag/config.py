# src/doc_rag/config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_repo_root(start: Path) -> Path:
    """
    Best-effort repository root discovery.
    - Prefer the closest ancestor containing `pyproject.toml`.
    - Fallback to the starting directory if not found.
    """
    cur = start.resolve()
    for _ in range(20):
        if (cur / "pyproject.toml").exists():
            return cur
        if cur.parent == cur:
            break
        cur = cur.parent
    return start.resolve()


PACKAGE_ROOT = Path(__file__).resolve().parent
REPO_ROOT = _find_repo_root(PACKAGE_ROOT)

# Load .env into process environment early so embedding SDKs can read it.
load_dotenv(str(REPO_ROOT / ".env"), override=False)

DATA_ROOT = REPO_ROOT / ".data"


class Settings(BaseSettings):
    DEBUG: bool = False

    DOC_RAG_DATABASE_URL: str = f"sqlite+aiosqlite:///{DATA_ROOT / 'doc_rag.db'}"
    DOC_RAG_LOG_LEVEL: str = "INFO"
    DOC_RAG_LOG_JSON: bool = True

    # Query embedding (the vector index itself is external).
    DOC_RAG_EMBED_PROVIDER: str = "hash"
    DOC_RAG_EMBED_MODEL: str = "hash"
    DOC_RAG_EMBED_DIM: int = 768
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_REQUEST_TIMEOUT_S: float = 30.0
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_API_BASE: Optional[str] = "https://api.openai.com/v1"

    # Request shape.
    DOC_RAG_DEFAULT_TOP_K: int = 5
    DOC_RAG_MAX_TOP_K: int = 50
    DOC_RAG_MAX_KEYWORDS: int = 12
    DOC_RAG_VOCABULARY_PATH: Optional[str] = None

    # Model-assisted keyword expansion (disabled unless a provider is set).
    DOC_RAG_KEYWORD_LLM_PROVIDER: Optional[str] = None
    DOC_RAG_KEYWORD_LLM_MODEL: str = ""
    DOC_RAG_KEYWORD_LLM_TIMEOUT_S: float = 1.5
    DOC_RAG_KEYWORD_LLM_MAX_TERMS: int = 8

    # Strategy fan-out.
    DOC_RAG_VECTOR_MAX_K: int = 200
    DOC_RAG_VECTOR_FETCH_MULTIPLIER: int = 2
    DOC_RAG_LEXICAL_WINDOW: int = 200
    DOC_RAG_TITLE_WINDOW: int = 50
    DOC_RAG_TITLE_REQUIRED_LABELS: List[str] = []  # JSON array in env, e.g. ["画面仕様"]
    DOC_RAG_FUSION_WINDOW: int = 50

    # Ranking tunables.
    DOC_RAG_BM25_K1: float = 1.2
    DOC_RAG_BM25_B: float = 0.75
    DOC_RAG_BM25_TITLE_WEIGHT: float = 3.0
    DOC_RAG_BM25_CONTENT_WEIGHT: float = 1.0
    DOC_RAG_RRF_K: int = 60
    DOC_RAG_WEIGHT_VECTOR: float = 0.3
    DOC_RAG_WEIGHT_LEXICAL: float = 0.4
    DOC_RAG_WEIGHT_TITLE: float = 0.2
    DOC_RAG_WEIGHT_LABEL: float = 0.1
    DOC_RAG_MIN_CONTENT_CHARS: int = 10

    # Latency budget (seconds).
    DOC_RAG_VECTOR_TIMEOUT_S: float = 2.0
    DOC_RAG_LEXICAL_TIMEOUT_S: float = 2.0
    DOC_RAG_TITLE_TIMEOUT_S: float = 1.0
    DOC_RAG_REQUEST_DEADLINE_S: float = 5.0

    # Result cache.
    DOC_RAG_CACHE_CAPACITY: int = 512
    DOC_RAG_CACHE_TTL_S: float = 300.0

    model_config = SettingsConfigDict(
        env_file=str(REPO_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()


def _set_env_if_missing(key: str, value: str | None) -> None:
    """
    Keep provider SDKs working with .env-based Settings by exporting to os.environ.
    Do not override explicitly provided environment variables.
    """
    if value is None:
        return
    raw = str(value).strip()
    if not raw or os.getenv(key):
        return
    os.environ[key] = raw


_set_env_if_missing("OPENAI_API_KEY", settings.OPENAI_API_KEY)
_set_env_if_missing("OPENAI_API_BASE", settings.OPENAI_API_BASE)
