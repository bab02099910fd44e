"""Runtime configuration for the ingestion pipeline.

Values come from environment variables; a ``.env`` file at the repo root is
loaded first when present.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class Settings:
    """Pipeline configuration."""

    # Ledger
    ledger_db_path: Path = REPO_ROOT / "ledger.db"
    default_category_id: Optional[int] = None
    default_branch_id: Optional[int] = None

    # Batch import
    import_pause_seconds: float = 0.1
    document_label: str = "NFe"
    duplicate_description_fallback: bool = False
    max_upload_bytes: int = 10 * 1024 * 1024

    # Review sessions
    review_session_ttl_minutes: int = 24 * 60

    # Inference service
    inference_backend: str = "endpoint"  # endpoint | openai
    inference_endpoint_url: Optional[str] = None
    inference_api_key: Optional[str] = None
    inference_timeout_seconds: int = 120
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"

    # Temporal
    temporal_endpoint: Optional[str] = None
    temporal_namespace: str = "default"
    temporal_api_key: Optional[str] = None
    temporal_task_queue: str = "fiscal-import"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        defaults = cls()
        return cls(
            ledger_db_path=Path(os.getenv("LEDGER_DB_PATH", str(defaults.ledger_db_path))),
            default_category_id=_env_int("DEFAULT_CATEGORY_ID"),
            default_branch_id=_env_int("DEFAULT_BRANCH_ID"),
            import_pause_seconds=float(os.getenv("IMPORT_PAUSE_SECONDS", str(defaults.import_pause_seconds))),
            document_label=os.getenv("DOCUMENT_LABEL", defaults.document_label),
            duplicate_description_fallback=_env_bool(
                "DUPLICATE_DESCRIPTION_FALLBACK", defaults.duplicate_description_fallback
            ),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(defaults.max_upload_bytes))),
            review_session_ttl_minutes=int(
                os.getenv("REVIEW_SESSION_TTL_MINUTES", str(defaults.review_session_ttl_minutes))
            ),
            inference_backend=os.getenv("INFERENCE_BACKEND", defaults.inference_backend).lower(),
            inference_endpoint_url=os.getenv("INFERENCE_ENDPOINT_URL"),
            inference_api_key=os.getenv("INFERENCE_API_KEY"),
            inference_timeout_seconds=int(
                os.getenv("INFERENCE_TIMEOUT_SECONDS", str(defaults.inference_timeout_seconds))
            ),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
            temporal_endpoint=os.getenv("TEMPORAL_ENDPOINT"),
            temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", defaults.temporal_namespace),
            temporal_api_key=os.getenv("TEMPORAL_API_KEY"),
            temporal_task_queue=os.getenv("TEMPORAL_TASK_QUEUE", defaults.temporal_task_queue),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            log_json=_env_bool("LOG_JSON", defaults.log_json),
        )
