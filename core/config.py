from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RateRule:
    requests: int
    window_seconds: int = 60


@dataclass(frozen=True)
class Settings:
    app_name: str = "Script Studio Credits API"
    app_version: str = "0.1.0"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    allowed_origins: tuple[str, ...] = _split_csv(
        os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
    )
    database_url: str = os.getenv("DATABASE_URL", f"sqlite:///{ROOT_DIR / 'credits.db'}")
    app_base_url: str = os.getenv("APP_BASE_URL", "http://localhost:8000")

    # Callback authentication
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "")
    payment_server_key: str = os.getenv("PAYMENT_SERVER_KEY", "")
    payment_ip_allowlist: tuple[str, ...] = _split_csv(os.getenv("PAYMENT_IP_ALLOWLIST", ""))

    # Workflow engine endpoints, one per billable action
    script_webhook_url: str = os.getenv("SCRIPT_WEBHOOK_URL", "")
    tts_webhook_url: str = os.getenv("TTS_WEBHOOK_URL", "")
    image_search_webhook_url: str = os.getenv("IMAGE_SEARCH_WEBHOOK_URL", "")
    video_search_webhook_url: str = os.getenv("VIDEO_SEARCH_WEBHOOK_URL", "")
    dispatch_timeout_seconds: float = float(os.getenv("DISPATCH_TIMEOUT_SECONDS", "10"))

    # Pricing
    script_tier_economy: int = int(os.getenv("CREDITS_SCRIPT_TIER_ECONOMY", "20"))
    script_tier_standard: int = int(os.getenv("CREDITS_SCRIPT_TIER_STANDARD", "30"))
    script_tier_premium: int = int(os.getenv("CREDITS_SCRIPT_TIER_PREMIUM", "50"))
    script_per_minute: int = int(os.getenv("CREDITS_SCRIPT_PER_MINUTE", "1"))
    tts_per_section: int = int(os.getenv("CREDITS_TTS_SECTION", "3"))
    image_batch_size: int = int(os.getenv("CREDITS_IMAGE_BATCH_SIZE", "5"))
    image_batch_price: int = int(os.getenv("CREDITS_IMAGE_BATCH_PRICE", "1"))
    video_price: int = int(os.getenv("CREDITS_VIDEO_PRICE", "2"))
    starting_credits: int = int(os.getenv("CREDITS_STARTING", "25"))
    first_purchase_bonus_percent: int = int(os.getenv("CREDITS_FIRST_PURCHASE_BONUS_PERCENT", "20"))
    creator_monthly_credits: int = int(os.getenv("CREDITS_CREATOR_MONTHLY", "100"))
    pro_monthly_credits: int = int(os.getenv("CREDITS_PRO_MONTHLY", "500"))
    refund_failed_callbacks: bool = _env_bool("REFUND_FAILED_CALLBACKS")

    # Rate limits, requests per window
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    rate_limit_script_generate: int = int(os.getenv("RATE_LIMIT_SCRIPT_GENERATE", "5"))
    rate_limit_tts_generate: int = int(os.getenv("RATE_LIMIT_TTS_GENERATE", "20"))
    rate_limit_image_search: int = int(os.getenv("RATE_LIMIT_IMAGE_SEARCH", "10"))
    rate_limit_video_search: int = int(os.getenv("RATE_LIMIT_VIDEO_SEARCH", "10"))

    def rate_rule(self, action: str) -> RateRule:
        limits = {
            "script_generate": self.rate_limit_script_generate,
            "tts_generate": self.rate_limit_tts_generate,
            "image_search": self.rate_limit_image_search,
            "video_search": self.rate_limit_video_search,
        }
        return RateRule(requests=limits[action], window_seconds=self.rate_limit_window_seconds)

    def webhook_url(self, action: str) -> str:
        urls = {
            "script_generate": self.script_webhook_url,
            "tts_generate": self.tts_webhook_url,
            "image_search": self.image_search_webhook_url,
            "video_search": self.video_search_webhook_url,
        }
        return urls[action]

    def callback_url(self, path: str) -> str:
        return f"{self.app_base_url.rstrip('/')}{path}"


settings = Settings()
