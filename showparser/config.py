import os

from pydantic import Field
from pydantic_settings import BaseSettings


def _default_workers() -> int:
    return os.cpu_count() or 4


class Settings(BaseSettings):
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "karaoke_parser"
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Vision model (OpenAI-compatible API, e.g. LM Studio)
    llm_base_url: str = "http://localhost:1234/v1"
    llm_model: str = "qwen2.5-vl-7b"
    llm_api_key: str = ""
    llm_temperature: float = 0.1

    # Classification worker pool
    max_workers: int = Field(default_factory=_default_workers)
    classifier_timeout_seconds: float = 60.0
    classifier_max_attempts: int = 3
    classifier_backoff_seconds: float = 1.0
    download_timeout_seconds: float = 10.0
    max_image_bytes: int = 10 * 1024 * 1024

    # Browser harvesting
    browser_headless: bool = True
    navigation_timeout_seconds: float = 30.0
    scroll_cycles: int = 5
    scroll_wait_seconds: float = 3.0
    max_images: int = 200
    min_image_dimension: int = 100
    cdn_patterns: list[str] = ["scontent", "fbcdn", "cdninstagram"]
    login_url: str = "https://www.facebook.com/login"

    # Session cookies
    session_cookies_path: str = "data/session-cookies.json"
    session_cookies_json: str = ""
    session_store_timeout_seconds: float = 2.0
    required_session_cookies: list[str] = ["xs", "c_user", "datr", "sb"]

    # Credential hand-off
    interactive_login: bool = False
    credential_timeout_seconds: float = 300.0

    # Live log window
    log_buffer_size: int = 50
    log_ttl_seconds: float = 10.0

    job_timeout_seconds: float = 1800.0

    model_config = {"env_file": ".env"}


settings = Settings()
