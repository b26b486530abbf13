from datetime import datetime, timedelta, timezone

import pytest

from opsflow.domain.sla import DedupKeyMode, SlaState, breach_dedup_key, classify, penalty_for

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
PENALTIES = {"low": 50.0, "medium": 100.0, "high": 250.0, "critical": 500.0}


class TestClassify:
    def test_no_deadline(self):
        assert classify(None, "pending", NOW) is SlaState.NO_SLA

    def test_on_track_warning_breached(self):
        window = timedelta(minutes=30)
        assert classify(NOW + timedelta(hours=2), "in_progress", NOW, window) is SlaState.ON_TRACK
        assert classify(NOW + timedelta(minutes=10), "in_progress", NOW, window) is SlaState.WARNING
        assert classify(NOW - timedelta(minutes=5), "in_progress", NOW, window) is SlaState.BREACHED
        assert classify(NOW, "pending", NOW, window) is SlaState.BREACHED

    def test_terminal_requests(self):
        deadline = NOW - timedelta(hours=1)
        assert classify(deadline, "completed", NOW, completed_at=deadline - timedelta(minutes=1)) is SlaState.MET
        assert classify(deadline, "completed", NOW, completed_at=deadline + timedelta(minutes=1)) is SlaState.BREACHED
        assert classify(deadline, "cancelled", NOW) is SlaState.MET

    def test_naive_deadline_is_treated_as_utc(self):
        naive = (NOW - timedelta(minutes=1)).replace(tzinfo=None)
        assert classify(naive, "pending", NOW) is SlaState.BREACHED


class TestPenalty:
    @pytest.mark.parametrize(
        "priority,hours,expected",
        [
            ("medium", 0.1, 100.0),
            ("medium", 1.0, 110.0),
            ("high", 3.7, 325.0),
            ("critical", 100, 2500.0),
            (None, 2, 120.0),
            ("unknown", 0, 100.0),
        ],
    )
    def test_penalty_for(self, priority, hours, expected):
        assert penalty_for(priority, hours, PENALTIES) == expected


class TestDedupKey:
    def test_request_mode_ignores_deadline(self):
        a = breach_dedup_key("req-1", NOW, DedupKeyMode.REQUEST)
        b = breach_dedup_key("req-1", NOW + timedelta(days=1), DedupKeyMode.REQUEST)
        assert a == b == "sla_breach:req-1"

    def test_breach_instance_mode_keys_on_deadline(self):
        a = breach_dedup_key("req-1", NOW, DedupKeyMode.BREACH_INSTANCE)
        b = breach_dedup_key("req-1", NOW + timedelta(days=1), DedupKeyMode.BREACH_INSTANCE)
        assert a != b
        assert a == "sla_breach:req-1@2026-03-02T12:00:00.000000Z"

    def test_breach_instance_key_is_stable_across_timezones(self):
        kst = timezone(timedelta(hours=9))
        assert breach_dedup_key("req-1", NOW, DedupKeyMode.BREACH_INSTANCE) == breach_dedup_key(
            "req-1", NOW.astimezone(kst), DedupKeyMode.BREACH_INSTANCE
        )
