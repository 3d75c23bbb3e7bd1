"""
Configuration for ChurnOpp.

Server settings come from the environment (a local .env file is loaded
first). Component tunables are plain dataclasses so tests and the demo can
build their own.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

# Load environment
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class Settings:
    """Server-side settings."""
    db_path: str = "data/churnopp.db"
    log_dir: str = "logs"
    jwt_secret: str = "dev-secret-change-me"
    score_cache_ttl_seconds: int = 3600
    churn_alert_threshold: float = 0.5

    # Alert email (SMTP is optional; alerts are only logged without it)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    alert_from: str = "alerts@churnopp.local"
    alert_fallback_recipient: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            db_path=os.getenv("CHURNOPP_DB_PATH", cls.db_path),
            log_dir=os.getenv("CHURNOPP_LOG_DIR", cls.log_dir),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            score_cache_ttl_seconds=_env_int("SCORE_CACHE_TTL_SECONDS", cls.score_cache_ttl_seconds),
            churn_alert_threshold=_env_float("CHURN_ALERT_THRESHOLD", cls.churn_alert_threshold),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=_env_int("SMTP_PORT", cls.smtp_port),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            alert_from=os.getenv("ALERT_FROM", cls.alert_from),
            alert_fallback_recipient=os.getenv("ALERT_FALLBACK_RECIPIENT"),
        )


@dataclass
class DetectorConfig:
    """Tunables for the client-side event detector."""
    rage_click_window_ms: int = 1000
    rage_click_threshold: int = 3
    inactivity_threshold_ms: int = 30_000
    inactivity_poll_seconds: float = 5.0

    # CSS class markers on clicked elements
    add_to_cart_class: str = "add-to-cart"
    checkout_step_class: str = "checkout-step"
    help_center_class: str = "help-center-link"


@dataclass
class DeliveryConfig:
    """Tunables for the client-side delivery queue."""
    collector_url: str = field(
        default_factory=lambda: os.getenv(
            "CHURNOPP_COLLECTOR_URL", "http://localhost:8000/api/events"
        )
    )
    retry_limit: int = 3
    retry_interval_seconds: float = 10.0
    request_timeout_seconds: float = 5.0


@dataclass
class ScoringConfig:
    """
    Thresholds and weights for the churn heuristic.

    Each signal adds its weight when its condition holds; the sum is capped
    at 1.0.
    """
    recency_days: float = 7
    recency_weight: float = 0.25

    min_scroll_depth: float = 25
    scroll_weight: float = 0.15

    max_rage_clicks: int = 3
    rage_weight: float = 0.15

    no_cart_weight: float = 0.10
    no_help_weight: float = 0.05

    min_avg_session_ms: float = 30_000
    avg_session_weight: float = 0.15

    min_total_session_ms: float = 300_000
    total_session_weight: float = 0.15

    max_score: float = 1.0
