import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings:
    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./jojopay.db")
        self.jwt_secret = os.getenv("JWT_SECRET")
        self.paypal_client_id = os.getenv("PAYPAL_CLIENT_ID")
        self.paypal_client_secret = os.getenv("PAYPAL_CLIENT_SECRET")
        self.paypal_environment = os.getenv("PAYPAL_ENVIRONMENT", "sandbox")
        self.paypal_webhook_id = os.getenv("PAYPAL_WEBHOOK_ID")
        self.tap_secret_key = os.getenv("TAP_SECRET_KEY")
        self.tap_public_key = os.getenv("TAP_PUBLIC_KEY")
        self.tap_webhook_secret = os.getenv("TAP_WEBHOOK_SECRET")
        self.public_site_url = os.getenv("PUBLIC_SITE_URL", "https://jojoprompts.lovable.app")
        self.cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        # Peers whose X-Forwarded-For header is believed when keying rate limits
        self.trusted_proxies = [p.strip() for p in os.getenv("TRUSTED_PROXIES", "").split(",") if p.strip()]
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.provider_timeout = float(os.getenv("PROVIDER_TIMEOUT", "30"))

    @property
    def paypal_api_url(self) -> str:
        if self.paypal_environment == "production":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


def get_settings() -> Settings:
    # Read at call time so tests can monkeypatch the environment
    return Settings()
