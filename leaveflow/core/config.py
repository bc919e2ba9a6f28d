from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    APP_NAME: str = "LeaveFlow"
    AUTH_MODE: Literal["firebase", "mock"] = "mock"

    FIREBASE_CREDENTIALS_PATH: str = "./firebase-credentials.json"

    CORS_ORIGINS: str = "http://localhost:3000"

    # Persistence
    STORE_BACKEND: Literal["memory", "supabase"] = "memory"
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""
    SUPABASE_SERVICE_KEY: str = ""

    # Audit anchoring + content storage
    ANCHOR_BACKEND: Literal["simulated", "http"] = "simulated"
    LEDGER_URL: str = ""
    LEDGER_API_KEY: str = ""
    STORAGE_BACKEND: Literal["simulated", "pinata"] = "simulated"
    PINATA_API_KEY: str = ""
    PINATA_SECRET_KEY: str = ""
    PINATA_GATEWAY_URL: str = "https://gateway.pinata.cloud/ipfs"

    # Document verification
    ANALYZER_BACKEND: Literal["openai", "disabled"] = "disabled"
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"

    # Routing policy thresholds (0-100 confidence)
    AUTO_REJECT_CONFIDENCE: int = 30
    MANUAL_REVIEW_CONFIDENCE: int = 50
    FAST_TRACK_CONFIDENCE: int = 90
    FAST_TRACK_ENABLED: bool = False

    VERIFICATION_TIMEOUT_SECONDS: float = 20.0
    ANCHOR_TIMEOUT_SECONDS: float = 10.0
    NOTIFY_TIMEOUT_SECONDS: float = 10.0

    # Notifications
    EMAILJS_SERVICE_ID: str = ""
    EMAILJS_PUBLIC_KEY: str = ""
    EMAILJS_PRIVATE_KEY: str = ""
    EMAILJS_TEMPLATE_ID: str = ""

    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    TELEGRAM_WEBHOOK_SECRET: str = ""

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
