from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment with defaults.

    Environment variable mapping follows pydantic's rules (e.g., APP_NAME, DEBUG,
    DATA_DIR, DB_FILENAME, JWT_SECRET, ATOMIC_MODE, REFRESH_INTERVAL_SECONDS).
    Server and client settings share one object so a single `.env` drives both.
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Basic app metadata
    app_name: str = "Trip Ledger"
    debug: bool = False
    version: str = "0.1.0"

    # Data & persistence
    data_dir: Path = Path("data")
    db_filename: str = "ledger.sqlite3"
    db_path: Optional[Path] = None  # derived if not provided

    # Auth (bearer JWT, subject = owner id)
    jwt_secret: str = "please-change-me"
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 60 * 24

    # Ledger behaviour
    enable_atomic_procedures: bool = True
    trip_number_prefix: str = "TR"
    trip_number_width: int = 3

    # Client session
    api_base_url: AnyHttpUrl = "http://127.0.0.1:8000"
    http_timeout_seconds: float = 5.0
    mutation_timeout_seconds: float = 10.0
    # 'auto' probes /capabilities, 'on' always tries RPC first, 'off' manual only
    atomic_mode: Literal["auto", "on", "off"] = "auto"
    refresh_interval_seconds: float = 30.0
    refresh_debounce_seconds: float = 2.0
    dedupe_window_seconds: float = 1.0

    def init_post_load(self) -> None:
        """Finalize derived fields and ensure directories exist."""
        if self.db_path is None:
            self.db_path = self.data_dir / self.db_filename
        # Ensure persistence directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        if self.trip_number_width < 1:
            raise ValueError("trip_number_width must be at least 1")
        for name in (
            "http_timeout_seconds",
            "mutation_timeout_seconds",
            "refresh_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.refresh_debounce_seconds < 0 or self.dedupe_window_seconds < 0:
            raise ValueError("debounce and dedupe windows cannot be negative")


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    settings.init_post_load()
    return settings
