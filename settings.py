import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image-preview"
DEFAULT_PUBLIC_BASE_URL = "https://images.iwasthere.today"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime configuration shared by the dispatcher and its collaborators."""
    google_api_key: Optional[str] = None
    gemini_model_image: str = DEFAULT_IMAGE_MODEL

    s3_bucket: str = "images"
    s3_endpoint_url: Optional[str] = None
    s3_region: Optional[str] = None
    public_image_base_url: str = DEFAULT_PUBLIC_BASE_URL

    payload_db_path: str = "payloads.db"
    payload_namespace: str = "payload-db"

    static_dir: str = "static"
    log_dir: str = "logs"
    log_to_file: bool = True

    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    batch_retry_step_ms: int = 500
    remote_fetch_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and `.env`, if present)."""
        load_dotenv()
        defaults = cls()
        return cls(
            google_api_key=os.getenv("GOOGLE_API_KEY") or None,
            gemini_model_image=os.getenv("GEMINI_MODEL_IMAGE") or defaults.gemini_model_image,
            s3_bucket=os.getenv("S3_BUCKET", defaults.s3_bucket),
            s3_endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
            s3_region=os.getenv("S3_REGION") or None,
            public_image_base_url=os.getenv("PUBLIC_IMAGE_BASE_URL", defaults.public_image_base_url),
            payload_db_path=os.getenv("PAYLOAD_DB_PATH", defaults.payload_db_path),
            payload_namespace=os.getenv("PAYLOAD_NAMESPACE", defaults.payload_namespace),
            static_dir=os.getenv("STATIC_DIR", defaults.static_dir),
            log_dir=os.getenv("LOG_DIR", defaults.log_dir),
            log_to_file=_env_bool("LOG_TO_FILE", defaults.log_to_file),
            retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts)),
            retry_base_delay_ms=int(os.getenv("RETRY_BASE_DELAY_MS", defaults.retry_base_delay_ms)),
            batch_retry_step_ms=int(os.getenv("BATCH_RETRY_STEP_MS", defaults.batch_retry_step_ms)),
            remote_fetch_timeout=float(os.getenv("REMOTE_FETCH_TIMEOUT", defaults.remote_fetch_timeout)),
        )
