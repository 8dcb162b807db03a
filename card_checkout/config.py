import os
from pathlib import Path
from dotenv import load_dotenv

from card_checkout.errors import ConfigError

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

TOKENIZER_CONTAINER_ID = "fp-tokenizer-container"


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./checkout.db")
        self.gateway_base_url = os.getenv("FLUIDPAY_BASE_URL", "").strip().rstrip("/")
        self.gateway_secret_key = os.getenv("FLUIDPAY_SECRET_KEY", "").strip()
        self.gateway_public_key = os.getenv("FLUIDPAY_PUBLIC_KEY", "").strip()
        self.gateway_timeout = float(os.getenv("FLUIDPAY_TIMEOUT", "30"))
        self.vault_payment_method = _flag("FLUIDPAY_VAULT", "true")
        self.jwt_secret = os.getenv("JWT_SECRET", "")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    def require_gateway(self):
        if not self.gateway_base_url:
            raise ConfigError("FLUIDPAY_BASE_URL is not set. Check your .env file.")
        if not self.gateway_secret_key:
            raise ConfigError("FLUIDPAY_SECRET_KEY is not set. Check your .env file.")

    def tokenizer_config(self) -> dict:
        """Public parameters the page needs to mount the hosted tokenizer."""
        return {
            "gateway_base_url": self.gateway_base_url,
            "public_key": self.gateway_public_key,
            "script_url": f"{self.gateway_base_url}/tokenizer/tokenizer.js",
            "container_id": TOKENIZER_CONTAINER_ID,
        }


settings = Settings()
