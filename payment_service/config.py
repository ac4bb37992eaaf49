import os
from functools import lru_cache
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()

REQUIRED_MPESA_SETTINGS = (
    "MPESA_BASE_URL",
    "MPESA_CONSUMER_KEY",
    "MPESA_CONSUMER_SECRET",
    "MPESA_SHORTCODE",
    "MPESA_PASSKEY",
)

def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")

def _env_list(name: str) -> List[str]:
    return [v.strip() for v in os.getenv(name, "").split(",") if v.strip()]

class Settings:
    """Runtime settings, read from the environment when constructed."""

    def __init__(self):
        self.mpesa_base_url = os.getenv("MPESA_BASE_URL", "").rstrip("/")
        self.mpesa_consumer_key = os.getenv("MPESA_CONSUMER_KEY", "")
        self.mpesa_consumer_secret = os.getenv("MPESA_CONSUMER_SECRET", "")
        self.mpesa_shortcode = os.getenv("MPESA_SHORTCODE", "")
        self.mpesa_passkey = os.getenv("MPESA_PASSKEY", "")
        self.mpesa_callback_url: Optional[str] = os.getenv("MPESA_CALLBACK_URL") or None
        self.mpesa_timeout_seconds = float(os.getenv("MPESA_TIMEOUT_SECONDS", "30"))
        self.payments_paused = _env_bool("MPESA_PAYMENTS_PAUSED", False)
        self.whitelist = _env_list("MPESA_WHITELIST")

        self.callback_ack_on_error = _env_bool("CALLBACK_ACK_ON_ERROR", True)

        self.pending_timeout_minutes = int(os.getenv("PENDING_TIMEOUT_MINUTES", "30"))
        self.sweep_interval_seconds = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
        self.sweeper_enabled = _env_bool("SWEEPER_ENABLED", True)

        self.rabbitmq_url: Optional[str] = os.getenv("RABBITMQ_URL") or None
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    def missing_mpesa_settings(self) -> List[str]:
        values = {
            "MPESA_BASE_URL": self.mpesa_base_url,
            "MPESA_CONSUMER_KEY": self.mpesa_consumer_key,
            "MPESA_CONSUMER_SECRET": self.mpesa_consumer_secret,
            "MPESA_SHORTCODE": self.mpesa_shortcode,
            "MPESA_PASSKEY": self.mpesa_passkey,
        }
        return [name for name in REQUIRED_MPESA_SETTINGS if not values[name]]

@lru_cache()
def get_settings() -> Settings:
    return Settings()
