from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path


class Settings(BaseSettings):
    APP_NAME: str = "Duesync Engine"
    ENV: str = "dev"

    # apps/backend/duesync.sqlite3 as an absolute path so CWD does not matter
    _default_db_path = Path(__file__).resolve().parents[2] / "duesync.sqlite3"
    DATABASE_URL: str = f"sqlite:///{_default_db_path}"

    CORS_ORIGINS: list[str] = ["*"]
    TIMEZONE: str = "America/Sao_Paulo"
    LOG_LEVEL: str = "INFO"

    # Recurring generation
    GENERATION_HORIZON_DAYS: int = 45
    INSTANCE_DUE_TIME: str = "09:00"
    RULE_REMINDER_OFFSETS: list[int] = [1440, 60]

    # Reminders
    DEFAULT_REMINDER_OFFSETS: list[int] = [1440, 120, 60]
    REMINDER_CLAIM_TTL_SECONDS: int = 300
    AGENDA_SEND_HOUR: int = 7

    # Scheduler
    SCHEDULER_MAX_WORKERS: int = 4
    SCHEDULER_INTERVAL_SECONDS: int = 300
    TICK_DEADLINE_SECONDS: int = 240
    EXTERNAL_TIMEOUT_SECONDS: float = 10.0

    # Calendar sync
    SYNC_IMPORT_WINDOW_DAYS: int = 90
    SYNC_PUSH_BATCH_LIMIT: int = 50
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # Messaging
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_VERSION: str = "v21.0"
    # empty disables templates and sends plain text only
    WHATSAPP_REMINDER_TEMPLATE: str = "lembrete_compromisso"
    WHATSAPP_TEMPLATE_LANGUAGE: str = "pt_BR"

    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="DUESYNC_", case_sensitive=False)


settings = Settings()
