"""
Tests for the churn heuristic, the score cache and alert scheduling.
"""

import random
import sqlite3

import pytest

from churnopp.cache import ScoreCache
from churnopp.config import ScoringConfig
from churnopp.errors import ComputationError
from churnopp.models import EventType, PersistedEvent
from churnopp.notifications import NotificationDispatcher
from churnopp.scorer import ChurnScorer, compute_churn_score, summarize_events

from conftest import NOW, FakeClock, RecordingSender


def engaged_history(make_event):
    """A recent, deep, calm, converting user: no weight triggers."""
    return [
        make_event(EventType.SCROLL_DEPTH, {"depth": 80}, days_ago=1),
        make_event(EventType.CART_ABANDONMENT, {"message": "User added item to cart"}, days_ago=1),
        make_event(EventType.HELP_CENTER_VISIT, {}, days_ago=2),
        make_event(EventType.SESSION_DURATION, {"duration": 200_000}, days_ago=1),
        make_event(EventType.SESSION_DURATION, {"duration": 150_000}, days_ago=2),
    ]


class TestComputeChurnScore:
    """The additive heuristic."""

    def test_empty_history_is_maximum_risk(self):
        assert compute_churn_score([], NOW) == 1.0

    def test_documented_scenario(self, make_event):
        events = [
            make_event(EventType.SCROLL_DEPTH, {"depth": 10}, days_ago=10),
            make_event(EventType.SESSION_DURATION, {"duration": 5000}, days_ago=10),
        ]
        # recency + depth + no cart + no help + avg session + total session
        assert compute_churn_score(events, NOW) == 0.85

    def test_engaged_user_scores_zero(self, make_event):
        assert compute_churn_score(engaged_history(make_event), NOW) == 0.0

    @pytest.mark.parametrize("mutation,expected", [
        ("stale", 0.25),
        ("shallow", 0.15),
        ("no_cart", 0.10),
        ("no_help", 0.05),
    ])
    def test_single_signal_weights(self, make_event, mutation, expected):
        events = engaged_history(make_event)
        if mutation == "stale":
            events = [e.model_copy(update={"timestamp": e.timestamp.replace(year=2025)}) for e in events]
        elif mutation == "shallow":
            events = [e for e in events if e.event_type != EventType.SCROLL_DEPTH]
            events.append(make_event(EventType.SCROLL_DEPTH, {"depth": 24}, days_ago=1))
        elif mutation == "no_cart":
            events = [e for e in events if e.event_type != EventType.CART_ABANDONMENT]
        elif mutation == "no_help":
            events = [e for e in events if e.event_type != EventType.HELP_CENTER_VISIT]
        assert compute_churn_score(events, NOW) == expected

    def test_rage_clicks_must_exceed_three(self, make_event):
        events = engaged_history(make_event)
        three = events + [make_event(EventType.RAGE_CLICK, days_ago=1) for _ in range(3)]
        four = events + [make_event(EventType.RAGE_CLICK, days_ago=1) for _ in range(4)]
        assert compute_churn_score(three, NOW) == 0.0
        assert compute_churn_score(four, NOW) == 0.15

    def test_recency_boundary_is_strict(self, make_event):
        events = engaged_history(make_event)
        events = [e.model_copy(update={"timestamp": NOW.replace(day=8)}) for e in events]
        # Exactly 7 days old does not count as stale
        assert compute_churn_score(events, NOW) == 0.0

    def test_short_sessions(self, make_event):
        events = [e for e in engaged_history(make_event) if e.event_type != EventType.SESSION_DURATION]
        events += [make_event(EventType.SESSION_DURATION, {"duration": 20_000}, days_ago=1) for _ in range(4)]
        # avg 20s < 30s and total 80s < 300s
        assert compute_churn_score(events, NOW) == 0.30

    def test_no_session_events_counts_as_zero_time(self, make_event):
        events = [make_event(EventType.SCROLL_DEPTH, {"depth": 90}, days_ago=1)]
        assert compute_churn_score(events, NOW) == 0.45

    def test_score_capped_at_one(self, make_event):
        config = ScoringConfig(recency_weight=0.9)
        events = [make_event(EventType.INTERACTION, days_ago=30)]
        assert compute_churn_score(events, NOW, config) == 1.0

    def test_non_numeric_payload_treated_as_zero(self, make_event):
        events = [make_event(EventType.SCROLL_DEPTH, {"depth": "deep"}, days_ago=1)]
        assert summarize_events(events).max_scroll_depth == 0

    def test_order_independent_and_bounded(self, make_event):
        rng = random.Random(3)
        types = list(EventType)
        for _ in range(50):
            events = [
                make_event(
                    rng.choice(types),
                    {"depth": rng.randint(0, 100), "duration": rng.randint(0, 120_000)},
                    days_ago=rng.uniform(0, 20),
                )
                for _ in range(rng.randint(1, 30))
            ]
            score = compute_churn_score(events, NOW)
            shuffled = events[:]
            rng.shuffle(shuffled)
            assert compute_churn_score(shuffled, NOW) == score
            assert 0.0 <= score <= 1.0
            assert round(score, 2) == score


class TestScoreCache:
    """TTL cache behavior."""

    def test_hit_within_ttl(self):
        clock = FakeClock()
        cache = ScoreCache(ttl_seconds=3600, clock=clock)
        cache.put(("a", "u"), 0.4)
        clock.advance(3599)
        assert cache.get(("a", "u")).score == 0.4

    def test_expired_entry_is_absent(self):
        clock = FakeClock()
        cache = ScoreCache(ttl_seconds=3600, clock=clock)
        cache.put(("a", "u"), 0.4)
        clock.advance(3600)
        assert cache.get(("a", "u")) is None

    def test_invalidate(self):
        cache = ScoreCache()
        cache.put(("a", "u"), 0.4)
        cache.invalidate(("a", "u"))
        cache.invalidate(("a", "missing"))
        assert cache.get(("a", "u")) is None


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def cache_clock():
    return FakeClock()


@pytest.fixture
def scorer(db, sender, cache_clock):
    return ChurnScorer(
        db,
        cache=ScoreCache(ttl_seconds=3600, clock=cache_clock),
        dispatcher=NotificationDispatcher(sender),
        now=lambda: NOW,
    )


def run_deferred(tasks):
    """Collects deferred calls like BackgroundTasks.add_task."""
    def defer(func, *args):
        tasks.append((func, args))
    return defer


class TestChurnScorer:
    """Caching and alert scheduling."""

    def test_unknown_user_scores_one_and_alerts(self, scorer, sender):
        tasks = []
        result = scorer.get_score("acct_enterprise", "nobody", defer=run_deferred(tasks))
        assert result.score == 1.0
        assert result.alert_scheduled is True
        assert sender.sent == []

        for func, args in tasks:
            func(*args)
        assert len(sender.sent) == 1
        assert sender.sent[0].recipient == "owner+enterprise@example.com"

    def test_second_request_within_ttl_reuses_cache_without_alert(self, scorer, cache_clock):
        tasks = []
        first = scorer.get_score("acct_enterprise", "u1", defer=run_deferred(tasks))
        cache_clock.advance(1800)
        second = scorer.get_score("acct_enterprise", "u1", defer=run_deferred(tasks))
        assert first.cached is False
        assert second.cached is True
        assert second.score == first.score
        assert len(tasks) == 1

    def test_expiry_recomputes_from_current_history(self, scorer, db, make_event, cache_clock):
        tasks = []
        assert scorer.get_score("acct_enterprise", "session-abc", defer=run_deferred(tasks)).score == 1.0

        for event in engaged_history(make_event):
            db.append_event(event)
        # Still cached
        assert scorer.get_score("acct_enterprise", "session-abc").score == 1.0

        cache_clock.advance(3600)
        result = scorer.get_score("acct_enterprise", "session-abc", defer=run_deferred(tasks))
        assert result.cached is False
        assert result.score == 0.0
        assert len(tasks) == 1

    def test_low_score_does_not_alert(self, scorer, db, make_event):
        for event in engaged_history(make_event):
            db.append_event(event)
        tasks = []
        result = scorer.get_score("acct_enterprise", "session-abc", defer=run_deferred(tasks))
        assert result.alert_scheduled is False
        assert tasks == []

    def test_threshold_is_exclusive(self, db, sender, make_event):
        scorer = ChurnScorer(db, dispatcher=NotificationDispatcher(sender), now=lambda: NOW)
        # 0.10 no cart + 0.05 no help + 0.15 avg + 0.15 total + 0.15 depth = 0.60
        db.append_event(make_event(EventType.INTERACTION, days_ago=1))
        scorer.alert_threshold = 0.6
        tasks = []
        result = scorer.get_score("acct_enterprise", "session-abc", defer=run_deferred(tasks))
        assert result.score == 0.6
        assert tasks == []

    def test_alert_includes_identified_email(self, scorer, db):
        db.upsert_user_email("acct_enterprise", "u1", "jane@example.com")
        tasks = []
        scorer.get_score("acct_enterprise", "u1", defer=run_deferred(tasks))
        func, (alert,) = tasks[0]
        assert alert.user_email == "jane@example.com"
        assert alert.churn_score == 1.0

    def test_store_failure_raises_and_leaves_cache_untouched(self, scorer, monkeypatch):
        scorer.cache.put(("acct_enterprise", "other"), 0.2)

        def broken(*args):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(scorer.db, "get_user_events", broken)
        with pytest.raises(ComputationError):
            scorer.get_score("acct_enterprise", "u1")
        assert scorer.cache.get(("acct_enterprise", "u1")) is None
        assert scorer.cache.get(("acct_enterprise", "other")).score == 0.2

    def test_injected_empty_cache_is_used(self, db):
        cache = ScoreCache(ttl_seconds=5)
        scorer = ChurnScorer(db, cache=cache, now=lambda: NOW)
        assert scorer.cache is cache
        scorer.get_score("acct_enterprise", "u1", defer=lambda *a: None)
        assert cache.get(("acct_enterprise", "u1")).score == 1.0

    def test_half_percent_depth_clears_depth_weight(self, make_event):
        # A 24.5% scroll reported as 25 no longer counts as shallow
        events = [make_event(EventType.SCROLL_DEPTH, {"depth": 25}, days_ago=1)]
        assert compute_churn_score(events, NOW) == 0.45

    def test_list_scores_sorted_descending(self, scorer, db, make_event):
        for event in engaged_history(make_event):
            db.append_event(event.model_copy(update={"user_id": "engaged"}))
        db.append_event(make_event(EventType.INTERACTION, days_ago=1, user_id="browsing"))
        db.append_event(make_event(EventType.INTERACTION, days_ago=12, user_id="gone"))

        results = scorer.list_scores("acct_enterprise", defer=lambda *a: None)
        assert [r.user_id for r in results] == ["gone", "browsing", "engaged"]
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    def test_list_scores_only_for_own_account(self, scorer, db, make_event):
        db.append_event(make_event(EventType.INTERACTION, account_id="acct_basic", user_id="theirs"))
        assert scorer.list_scores("acct_enterprise", defer=lambda *a: None) == []

    def test_deterministic_for_same_history(self, db, make_event):
        for event in engaged_history(make_event)[:2]:
            db.append_event(event)
        first = ChurnScorer(db, now=lambda: NOW).get_score("acct_enterprise", "session-abc", defer=lambda *a: None)
        second = ChurnScorer(db, now=lambda: NOW).get_score("acct_enterprise", "session-abc", defer=lambda *a: None)
        assert first.score == second.score
