"""
Configuration — loads settings from environment / .env file.

Module-level constants are the raw environment; ``load_settings()`` freezes
them into a ``PipelineSettings`` object that is handed to the stage
executors and the controller.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(PROJECT_ROOT / "public" / "uploads" / "generated-recipes")))
UPLOAD_URL_PREFIX = os.getenv("UPLOAD_URL_PREFIX", "/uploads/generated-recipes")

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")
OPENAI_IMAGE_MODEL = os.getenv("OPENAI_IMAGE_MODEL", "gpt-image-1")
IMAGE_SIZE = os.getenv("IMAGE_SIZE", "1024x1536")
LLM_RATE_LIMIT_RETRIES = int(os.getenv("LLM_RATE_LIMIT_RETRIES", "3"))
LLM_BASE_DELAY_SEC = int(os.getenv("LLM_BASE_DELAY_SEC", "10"))

# Postgres
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost:5432/recipe_pilot")

# Temporal
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_TASK_QUEUE = os.getenv("TEMPORAL_TASK_QUEUE", "recipe-pilot-queue")
TEMPORAL_NAMESPACE = "default"
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "4"))

# Pipeline timeouts (seconds)
METADATA_TIMEOUT_SEC = float(os.getenv("METADATA_TIMEOUT_SEC", "60"))
IMAGE_TIMEOUT_SEC = float(os.getenv("IMAGE_TIMEOUT_SEC", "120"))
ASSEMBLY_TIMEOUT_SEC = float(os.getenv("ASSEMBLY_TIMEOUT_SEC", "180"))
REFERENCE_FETCH_TIMEOUT_SEC = float(os.getenv("REFERENCE_FETCH_TIMEOUT_SEC", "20"))


def _chat_budget(timeout_sec: float) -> float:
    """Worst case for one chat call: every rate-limited attempt runs to the ceiling, plus the backoff sleeps."""
    backoff = sum(LLM_BASE_DELAY_SEC * 2 ** i for i in range(LLM_RATE_LIMIT_RETRIES))
    return (LLM_RATE_LIMIT_RETRIES + 1) * timeout_sec + backoff


# Wall-clock ceiling for one full advance (every stage once)
ADVANCE_TIMEOUT_SEC = (
    _chat_budget(METADATA_TIMEOUT_SEC)
    + REFERENCE_FETCH_TIMEOUT_SEC
    + 4 * IMAGE_TIMEOUT_SEC
    + _chat_budget(ASSEMBLY_TIMEOUT_SEC)
    + 60
)

# Longest stretch without a claim renewal or activity heartbeat (one stage, or one image slot)
HEARTBEAT_TIMEOUT_SEC = max(
    _chat_budget(METADATA_TIMEOUT_SEC),
    REFERENCE_FETCH_TIMEOUT_SEC + IMAGE_TIMEOUT_SEC,
    _chat_budget(ASSEMBLY_TIMEOUT_SEC),
) + 60

# A claim older than this belongs to a crashed worker and may be taken over.
# The controller renews it after every stage and every image slot.
ENTRY_LEASE_SEC = int(os.getenv("ENTRY_LEASE_SEC", str(int(ADVANCE_TIMEOUT_SEC) + 300)))

# Publishing
SITE_URL = os.getenv("SITE_URL", "")
WATERMARK_DOMAIN = os.getenv("WATERMARK_DOMAIN", "")
DEFAULT_AUTHOR_ID = os.getenv("DEFAULT_AUTHOR_ID", "")

# Optional custom instruction templates
METADATA_PROMPT_FILE = os.getenv("METADATA_PROMPT_FILE", "")
IMAGE_PROMPT_FILE = os.getenv("IMAGE_PROMPT_FILE", "")
RECIPE_PROMPT_FILE = os.getenv("RECIPE_PROMPT_FILE", "")


@dataclass(frozen=True)
class PipelineSettings:
    """Everything a stage executor needs to know about its environment."""
    content_model: str = "gpt-4.1"
    image_model: str = "gpt-image-1"
    image_size: str = "1024x1536"
    metadata_timeout_sec: float = 60.0
    image_timeout_sec: float = 120.0
    assembly_timeout_sec: float = 180.0
    reference_fetch_timeout_sec: float = 20.0
    entry_lease_sec: int = 900
    upload_dir: Path = UPLOAD_DIR
    upload_url_prefix: str = "/uploads/generated-recipes"
    watermark_domain: str = "recipeswebsite.com"
    default_author_id: str = ""
    metadata_prompt: str = ""
    image_prompt: str = ""
    recipe_prompt: str = ""


def _read_prompt(path: str) -> str:
    if not path:
        return ""
    p = Path(path)
    if not p.is_file():
        return ""
    return p.read_text(encoding="utf-8").strip()


def _watermark_domain() -> str:
    if WATERMARK_DOMAIN:
        return WATERMARK_DOMAIN
    if SITE_URL:
        domain = SITE_URL.split("://", 1)[-1].strip("/").split("/")[0]
        if domain:
            return domain.removeprefix("www.")
    return "recipeswebsite.com"


def load_settings() -> PipelineSettings:
    """Build the settings object from the current environment."""
    return PipelineSettings(
        content_model=OPENAI_MODEL,
        image_model=OPENAI_IMAGE_MODEL,
        image_size=IMAGE_SIZE,
        metadata_timeout_sec=METADATA_TIMEOUT_SEC,
        image_timeout_sec=IMAGE_TIMEOUT_SEC,
        assembly_timeout_sec=ASSEMBLY_TIMEOUT_SEC,
        reference_fetch_timeout_sec=REFERENCE_FETCH_TIMEOUT_SEC,
        entry_lease_sec=ENTRY_LEASE_SEC,
        upload_dir=UPLOAD_DIR,
        upload_url_prefix=UPLOAD_URL_PREFIX,
        watermark_domain=_watermark_domain(),
        default_author_id=DEFAULT_AUTHOR_ID,
        metadata_prompt=_read_prompt(METADATA_PROMPT_FILE),
        image_prompt=_read_prompt(IMAGE_PROMPT_FILE),
        recipe_prompt=_read_prompt(RECIPE_PROMPT_FILE),
    )
