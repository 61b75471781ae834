from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    anthropic_api_key: str = ""
    model: str = "claude-haiku-4-5-20251001"
    host: str = "0.0.0.0"
    port: int = 8100
    log_level: str = "info"
    sessions_dir: Path = Path("sessions")
    session_store: str = "file"  # "file" or "memory"
    submissions_file: Path = Path("submissions.json")
    audit_file: Path = Path("audit.json")
    oracle_backend: str = "canned"  # "canned", "claude" or "http"
    oracle_url: str = ""
    oracle_api_key: str = ""
    oracle_timeout_seconds: float = 30.0
    consent_mode: str = "implicit"  # "implicit" or "explicit"
    reject_policy: str = "restart"  # "restart" or "edit"
    clear_session_on_close: bool = False
    session_ttl_seconds: float = 24 * 60 * 60
    max_widgets: int = 1000  # engines kept in memory per process
    admissions_phone: str = "(800) 555-0123"
    # Demo gate for the staff dashboard only.
    staff_password: str = "Vision2024!"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
