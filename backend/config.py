from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    gemini_api_key: str = ""
    firestore_emulator_host: Optional[str] = None
    # Audience for Firebase ID tokens; falls back to google_cloud_project
    firebase_project_id: str = ""
    answer_model: str = "gemini-2.5-flash"

    # How long the human controller has to answer before the automated fallback fires
    answer_timeout_seconds: float = 45.0
    # Optional pacing for automated answers (0 = deliver as soon as generated)
    automated_answer_min_delay_seconds: float = 0.0
    automated_answer_max_delay_seconds: float = 0.0

    room_code_length: int = 6
    room_idle_ttl_seconds: int = 1800
    sweep_interval_seconds: int = 60
    require_identity: bool = False
    allow_observers: bool = True

    case_collection: str = "cases"
    default_case_ref: str = "default"

    # CORS origins: set ALLOWED_ORIGINS env var for production (comma-separated)
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]
    # Extra production origin (e.g. Cloud Run URL); appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )

    @property
    def token_audience(self) -> str:
        return self.firebase_project_id or self.google_cloud_project

    @property
    def cors_origins(self) -> List[str]:
        if self.extra_origin:
            return [*self.allowed_origins, self.extra_origin]
        return list(self.allowed_origins)


settings = Settings()
