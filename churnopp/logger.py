"""
Activity logging for ChurnOpp.

Every ingestion, rejection, score and alert is appended to a daily JSONL
file so tier usage and alert volume can be audited later.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import ChurnAlert, EventIngestRequest, PersistedEvent, ScoreResult


class ChurnOppLogger:
    """
    Logger for ChurnOpp activity.

    Writes one JSON object per line into `<log_type>_<YYYY-MM-DD>.jsonl`.
    """

    def __init__(self, log_dir: str = "logs"):
        """
        Initialize the logger.

        Args:
            log_dir: Directory to store log files
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _append_to_daily_log(self, log_type: str, data: dict):
        """Append an entry to a daily aggregate log file."""
        today = datetime.utcnow().strftime("%Y-%m-%d")
        filepath = self.log_dir / f"{log_type}_{today}.jsonl"

        with open(filepath, "a") as f:
            f.write(json.dumps(data, default=str) + "\n")

    def log_ingested(self, event: PersistedEvent):
        """Log a stored event."""
        self._append_to_daily_log("ingestion", {
            "account_id": event.account_id,
            "user_id": event.user_id,
            "event_type": event.event_type.value,
            "timestamp": event.timestamp.isoformat(),
            "logged_at": datetime.utcnow().isoformat(),
        })

    def log_rejected(self, request: EventIngestRequest, error_code: str, message: str):
        """Log an event refused by the gateway."""
        self._append_to_daily_log("rejections", {
            "account_id": request.account_id,
            "user_id": request.user_id,
            "event_type": request.event_type.value,
            "error": error_code,
            "message": message,
            "logged_at": datetime.utcnow().isoformat(),
        })

    def log_score(self, result: ScoreResult):
        """Log a served churn score."""
        self._append_to_daily_log("scores", {
            "account_id": result.account_id,
            "user_id": result.user_id,
            "score": result.score,
            "cached": result.cached,
            "alert_scheduled": result.alert_scheduled,
            "logged_at": datetime.utcnow().isoformat(),
        })

    def log_alert(self, alert: ChurnAlert, delivered: bool):
        """Log the outcome of an alert dispatch."""
        self._append_to_daily_log("alerts", {
            "account_id": alert.account_id,
            "user_id": alert.user_id,
            "churn_score": alert.churn_score,
            "recipient": alert.recipient,
            "delivered": delivered,
            "created_at": alert.created_at.isoformat(),
        })


def load_daily_log(log_dir: str, log_type: str, date: Optional[str] = None) -> list[dict]:
    """
    Load entries from a daily log file.

    Args:
        log_dir: Directory containing log files
        log_type: Type of log (ingestion, rejections, scores, alerts)
        date: Date string in YYYY-MM-DD format. Defaults to today.

    Returns:
        List of log entries
    """
    if date is None:
        date = datetime.utcnow().strftime("%Y-%m-%d")

    filepath = Path(log_dir) / f"{log_type}_{date}.jsonl"

    if not filepath.exists():
        return []

    entries = []
    with open(filepath, "r") as f:
        for line in f:
            if line.strip():
                entries.append(json.loads(line))

    return entries
