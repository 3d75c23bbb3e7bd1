"""
Heuristic churn scoring.

The score is a capped sum of fixed weights, one per behavioral signal, so
it is order-independent and deterministic for a given history and clock.
Results are cached per (account, user) and alerts fire once per fresh
computation above the risk threshold.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from .cache import ScoreCache
from .config import ScoringConfig
from .database import ChurnOppDatabase
from .errors import ComputationError
from .models import ChurnAlert, EventType, PersistedEvent, ScoreResult
from .notifications import Deferrer, NotificationDispatcher

log = logging.getLogger(__name__)


@dataclass
class SignalSummary:
    """Aggregates of one user's history that feed the heuristic."""
    event_count: int = 0
    latest: Optional[datetime] = None
    max_scroll_depth: float = 0
    rage_clicks: int = 0
    has_cart: bool = False
    has_help_visit: bool = False
    session_count: int = 0
    total_session_ms: float = 0

    @property
    def avg_session_ms(self) -> float:
        if self.session_count == 0:
            return 0
        return self.total_session_ms / self.session_count


def _number(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def summarize_events(events: Iterable[PersistedEvent]) -> SignalSummary:
    """Fold an event history into signal aggregates."""
    summary = SignalSummary()
    for event in events:
        summary.event_count += 1
        if summary.latest is None or event.timestamp > summary.latest:
            summary.latest = event.timestamp

        if event.event_type == EventType.SCROLL_DEPTH:
            summary.max_scroll_depth = max(
                summary.max_scroll_depth, _number(event.payload.get("depth"))
            )
        elif event.event_type == EventType.RAGE_CLICK:
            summary.rage_clicks += 1
        elif event.event_type == EventType.CART_ABANDONMENT:
            summary.has_cart = True
        elif event.event_type == EventType.HELP_CENTER_VISIT:
            summary.has_help_visit = True
        elif event.event_type == EventType.SESSION_DURATION:
            summary.session_count += 1
            summary.total_session_ms += _number(event.payload.get("duration"))
    return summary


def compute_churn_score(
    events: Iterable[PersistedEvent],
    now: datetime,
    config: Optional[ScoringConfig] = None,
) -> float:
    """
    Compute the churn risk of one user.

    Args:
        events: The user's full persisted history
        now: Reference time for recency
        config: Thresholds and weights

    Returns:
        Score in [0, 1] rounded to two decimals; 1.0 for an empty history
    """
    config = config if config is not None else ScoringConfig()
    summary = summarize_events(events)

    if summary.event_count == 0:
        return 1.0

    score = 0.0
    days_since_latest = (now - summary.latest).total_seconds() / 86400
    if days_since_latest > config.recency_days:
        score += config.recency_weight
    if summary.max_scroll_depth < config.min_scroll_depth:
        score += config.scroll_weight
    if summary.rage_clicks > config.max_rage_clicks:
        score += config.rage_weight
    if not summary.has_cart:
        # cartAbandonment is emitted on add-to-cart, so this reads "no purchase intent"
        score += config.no_cart_weight
    if not summary.has_help_visit:
        score += config.no_help_weight
    if summary.avg_session_ms < config.min_avg_session_ms:
        score += config.avg_session_weight
    if summary.total_session_ms < config.min_total_session_ms:
        score += config.total_session_weight

    return round(min(score, config.max_score), 2)


class ChurnScorer:
    """
    Cached churn scoring for tracked users.

    A cache hit returns the stored value and schedules nothing. A miss reads
    the full current history, recomputes, caches, and schedules at most one
    alert for that computation.
    """

    def __init__(
        self,
        db: ChurnOppDatabase,
        cache: Optional[ScoreCache] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[ScoringConfig] = None,
        alert_threshold: float = 0.5,
        fallback_recipient: Optional[str] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.cache = cache if cache is not None else ScoreCache()
        self.dispatcher = dispatcher if dispatcher is not None else NotificationDispatcher()
        self.config = config if config is not None else ScoringConfig()
        self.alert_threshold = alert_threshold
        self.fallback_recipient = fallback_recipient
        self._now = now

    def get_score(
        self,
        account_id: str,
        user_id: str,
        defer: Optional[Deferrer] = None,
    ) -> ScoreResult:
        """
        Get the churn score of one user.

        Args:
            account_id: Owning account
            user_id: Tracked user (session) id
            defer: Optional scheduler for the alert, e.g. BackgroundTasks.add_task

        Returns:
            ScoreResult with the score and whether it came from the cache
        """
        key = (account_id, user_id)
        entry = self.cache.get(key)
        if entry is not None:
            return ScoreResult(
                account_id=account_id,
                user_id=user_id,
                score=entry.score,
                cached=True,
            )

        try:
            events = self.db.get_user_events(account_id, user_id)
            score = compute_churn_score(events, self._now(), self.config)
        except (sqlite3.Error, OSError) as e:
            log.error("Scoring %s/%s failed: %s", account_id, user_id, e)
            raise ComputationError("Failed to compute churn score") from e

        self.cache.put(key, score)

        alert_scheduled = False
        if score > self.alert_threshold:
            alert_scheduled = self._schedule_alert(account_id, user_id, score, defer)

        return ScoreResult(
            account_id=account_id,
            user_id=user_id,
            score=score,
            alert_scheduled=alert_scheduled,
        )

    def list_scores(
        self,
        account_id: str,
        defer: Optional[Deferrer] = None,
    ) -> list[ScoreResult]:
        """Score every user seen for an account, highest risk first."""
        try:
            user_ids = self.db.list_user_ids(account_id)
        except (sqlite3.Error, OSError) as e:
            log.error("Listing users of %s failed: %s", account_id, e)
            raise ComputationError("Failed to list tracked users") from e

        results = [self.get_score(account_id, user_id, defer) for user_id in user_ids]
        results.sort(key=lambda r: (-r.score, r.user_id))
        return results

    def _schedule_alert(
        self,
        account_id: str,
        user_id: str,
        score: float,
        defer: Optional[Deferrer],
    ) -> bool:
        try:
            account = self.db.get_account(account_id)
            user_email = self.db.get_user_email(account_id, user_id)
        except (sqlite3.Error, OSError) as e:
            log.error("Could not resolve alert recipient for %s: %s", account_id, e)
            return False

        recipient = account.email if account else self.fallback_recipient
        if not recipient:
            log.warning("No alert recipient for account %s", account_id)
            return False

        self.dispatcher.submit(
            ChurnAlert(
                account_id=account_id,
                user_id=user_id,
                churn_score=score,
                recipient=recipient,
                user_email=user_email,
            ),
            defer=defer,
        )
        return True
