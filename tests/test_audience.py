"""Tests for trigger strategies and audience resolution."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.exceptions import AudienceResolutionError
from app.models.activity import CoachingSession
from app.models.automation import RuleScope
from app.models.user import UserRole
from app.services.automation.audience import TRIGGER_REGISTRY, AudienceResolver, TriggerStrategy
from app.services.automation.rules import LoadedRule, rule_to_mapping, validate_rule_definition
from tests.helpers import NOW

WINDOW = timedelta(minutes=30)
EVENT_STAGE = [{"threshold_days": 0, "action_kind": "auto_message"}]


def _loaded(rule):
    definition, config, strategy = validate_rule_definition(rule.id, rule_to_mapping(rule))
    return LoadedRule(rule.id, definition, config, strategy)


def _resolve(db, rule, now=NOW, window=WINDOW):
    return list(AudienceResolver(db).resolve(_loaded(rule), now, window))


def _ids(candidates):
    return {c.user_id for c in candidates}


def _event_rule(make_rule, trigger_type, **overrides):
    fields = {"trigger_type": trigger_type, "stages": EVENT_STAGE, "signals_enabled": []}
    fields.update(overrides)
    return make_rule(**fields)


def _book(db, client, coach, created_days_ago=0, minutes_ago=None, status="scheduled"):
    created = NOW - (timedelta(minutes=minutes_ago) if minutes_ago is not None else timedelta(days=created_days_ago))
    db.add(CoachingSession(client_id=client.id, coach_id=coach.id, status=status,
                           start_time=created + timedelta(days=2), created_at=created, updated_at=created))
    db.commit()


class TestAudienceScope:
    """Platform and coach scoping, target audience and filters."""

    def test_platform_clients_only(self, db_session, make_rule, client_user, coach_user, admin_user):
        rule = make_rule()
        assert _ids(_resolve(db_session, rule)) == {client_user.id}

    def test_target_all_includes_coaches_not_admins(self, db_session, make_rule, client_user, coach_user, admin_user):
        rule = make_rule(target_audience="all")
        assert _ids(_resolve(db_session, rule)) == {client_user.id, coach_user.id}

    def test_target_coaches(self, db_session, make_rule, client_user, coach_user):
        rule = make_rule(target_audience="coaches")
        assert _ids(_resolve(db_session, rule)) == {coach_user.id}

    def test_default_status_filter_keeps_active_and_null(self, db_session, make_rule, make_user):
        active = make_user(status="active")
        unset = make_user(status=None)
        paused = make_user(status="paused")
        rule = make_rule()
        ids = _ids(_resolve(db_session, rule))
        assert active.id in ids
        assert unset.id in ids
        assert paused.id not in ids

    def test_explicit_status_filter(self, db_session, make_rule, make_user):
        make_user(status="active")
        paused = make_user(status="paused")
        rule = make_rule(audience_filters={"statuses": ["paused"]})
        assert _ids(_resolve(db_session, rule)) == {paused.id}

    def test_exclude_user_ids(self, db_session, make_rule, make_user):
        keep = make_user()
        drop = make_user()
        rule = make_rule(audience_filters={"exclude_user_ids": [drop.id]})
        assert _ids(_resolve(db_session, rule)) == {keep.id}

    def test_coach_scope_only_active_links(self, db_session, make_rule, make_user, coach_user, link_client):
        linked = make_user(first_name="Linked")
        ended = make_user(first_name="Ended")
        make_user(first_name="Stranger")
        link_client(coach_user, linked)
        link_client(coach_user, ended, status="ended")

        rule = make_rule(scope=RuleScope.coach, owner_id=coach_user.id)
        candidates = _resolve(db_session, rule)
        assert _ids(candidates) == {linked.id}
        assert candidates[0].metadata["coach_name"] == "Coach Dana"

    def test_candidate_snapshot_fields(self, db_session, make_rule, client_user):
        candidate = _resolve(db_session, make_rule())[0]
        assert candidate.first_name == "Jamie"
        assert candidate.last_name == "Lee"
        assert candidate.role == "client"
        assert candidate.email == client_user.email


class TestInactivityTriggers:

    def test_client_dropoff_selects_whole_audience(self, db_session, make_rule, make_user):
        users = [make_user(created_days_ago=d) for d in (1, 30, 400)]
        assert _ids(_resolve(db_session, make_rule())) == {u.id for u in users}

    def test_inactive_days_prefilters_on_profile_updates(self, db_session, make_rule, make_user):
        stale = make_user(updated_at=NOW - timedelta(days=10))
        fresh = make_user(updated_at=NOW - timedelta(days=1))
        rule = make_rule(trigger_type="inactive_days")
        ids = _ids(_resolve(db_session, rule))
        assert stale.id in ids
        assert fresh.id not in ids


class TestLifecycleTriggers:

    def test_user_signup_uses_tick_window(self, db_session, make_rule, make_user):
        recent = make_user()
        recent.created_at = NOW - timedelta(minutes=10)
        older = make_user()
        older.created_at = NOW - timedelta(hours=2)
        db_session.commit()

        rule = _event_rule(make_rule, "user_signup")
        assert _ids(_resolve(db_session, rule)) == {recent.id}

    def test_user_signup_window_override(self, db_session, make_rule, make_user):
        older = make_user()
        older.created_at = NOW - timedelta(hours=2)
        db_session.commit()

        rule = _event_rule(make_rule, "user_signup", trigger_config={"window_minutes": 180})
        assert older.id in _ids(_resolve(db_session, rule))

    def test_profile_complete(self, db_session, make_rule, make_user):
        done = make_user(onboarding_completed=True, updated_at=NOW - timedelta(minutes=5))
        make_user(onboarding_completed=False, updated_at=NOW - timedelta(minutes=5))
        make_user(onboarding_completed=True, updated_at=NOW - timedelta(days=3))
        rule = _event_rule(make_rule, "profile_complete")
        assert _ids(_resolve(db_session, rule)) == {done.id}

    def test_onboarding_incomplete_after_days(self, db_session, make_rule, make_user):
        stuck = make_user(created_days_ago=5, onboarding_completed=False)
        make_user(created_days_ago=1, onboarding_completed=False)
        make_user(created_days_ago=5, onboarding_completed=True)
        rule = _event_rule(make_rule, "onboarding_incomplete", trigger_config={"days": 3})
        assert _ids(_resolve(db_session, rule)) == {stuck.id}

    def test_coach_verified(self, db_session, make_rule, make_user):
        verified = make_user(UserRole.coach, is_verified=True, verified_at=NOW - timedelta(minutes=20))
        make_user(UserRole.coach, is_verified=True, verified_at=NOW - timedelta(days=2))
        make_user(UserRole.coach, is_verified=False)
        rule = _event_rule(make_rule, "coach_verified", target_audience="coaches")
        assert _ids(_resolve(db_session, rule)) == {verified.id}

    def test_account_anniversary(self, db_session, make_rule, make_user):
        year_old = make_user(created_days_ago=365)
        make_user(created_days_ago=364)
        make_user(created_days_ago=0)
        rule = _event_rule(make_rule, "account_anniversary")
        candidates = _resolve(db_session, rule)
        assert _ids(candidates) == {year_old.id}
        assert candidates[0].metadata["years"] == 1


class TestBookingTriggers:

    def test_first_booking(self, db_session, make_rule, make_user, coach_user):
        first = make_user(first_name="First")
        repeat = make_user(first_name="Repeat")
        _book(db_session, first, coach_user, minutes_ago=5)
        _book(db_session, repeat, coach_user, created_days_ago=20)
        _book(db_session, repeat, coach_user, minutes_ago=5)

        rule = _event_rule(make_rule, "first_booking")
        candidates = _resolve(db_session, rule)
        assert _ids(candidates) == {first.id}
        assert candidates[0].metadata["booking_count"] == 1

    def test_booking_milestone(self, db_session, make_rule, make_user, coach_user):
        client = make_user()
        for days in (30, 20, 10):
            _book(db_session, client, coach_user, created_days_ago=days)
        _book(db_session, client, coach_user, minutes_ago=1)

        rule = _event_rule(make_rule, "booking_milestone", trigger_config={"threshold": 4})
        assert _ids(_resolve(db_session, rule)) == {client.id}

        rule_five = _event_rule(make_rule, "booking_milestone", trigger_config={"threshold": 5})
        assert _resolve(db_session, rule_five) == []

    def test_booking_milestone_needs_a_new_booking(self, db_session, make_rule, make_user, coach_user):
        client = make_user()
        _book(db_session, client, coach_user, created_days_ago=10)
        _book(db_session, client, coach_user, created_days_ago=5)
        rule = _event_rule(make_rule, "booking_milestone", trigger_config={"threshold": 2})
        assert _resolve(db_session, rule) == []

    def test_no_bookings_days(self, db_session, make_rule, make_user, coach_user):
        idle = make_user(first_name="Idle")
        booked = make_user(first_name="Booked")
        make_user(first_name="New", created_days_ago=3)
        _book(db_session, booked, coach_user, created_days_ago=2)

        rule = _event_rule(make_rule, "no_bookings_days", trigger_config={"days": 14})
        assert _ids(_resolve(db_session, rule)) == {idle.id}


class TestCalendarTriggers:

    def test_weekly_motivation_on_matching_weekday(self, db_session, make_rule, client_user):
        monday = _event_rule(make_rule, "weekly_motivation", trigger_config={"day_of_week": 0})
        tuesday = _event_rule(make_rule, "weekly_motivation", trigger_config={"day_of_week": 1})
        assert _ids(_resolve(db_session, monday)) == {client_user.id}
        assert _resolve(db_session, tuesday) == []

    def test_monthly_summary_day(self, db_session, make_rule, client_user):
        rule = _event_rule(make_rule, "monthly_summary", trigger_config={"day_of_month": 5})
        assert _ids(_resolve(db_session, rule)) == {client_user.id}
        assert _resolve(db_session, rule, now=NOW + timedelta(days=1)) == []

    def test_monthly_summary_clamps_to_short_month(self, db_session, make_rule, client_user):
        rule = _event_rule(make_rule, "monthly_summary", trigger_config={"day_of_month": 31})
        assert _ids(_resolve(db_session, rule, now=datetime(2026, 9, 30, 9, 0))) == {client_user.id}
        assert _resolve(db_session, rule, now=datetime(2026, 10, 30, 9, 0)) == []


class _DuplicatingTrigger(TriggerStrategy):
    trigger_type = "client_dropoff"
    measures_inactivity = True

    def select(self, directory, definition, config, now, window):
        users = directory.in_scope(definition).all()
        return [(u, {}) for u in users] * 2


class _BrokenTrigger(TriggerStrategy):
    trigger_type = "client_dropoff"
    measures_inactivity = True

    def select(self, directory, definition, config, now, window):
        raise OperationalError("SELECT users", {}, Exception("directory offline"))


class TestAudienceResolver:

    def test_each_user_yielded_once(self, db_session, make_rule, client_user, monkeypatch):
        rule = _loaded(make_rule())
        monkeypatch.setitem(TRIGGER_REGISTRY, "client_dropoff", _DuplicatingTrigger())
        candidates = list(AudienceResolver(db_session).resolve(rule, NOW, WINDOW))
        assert [c.user_id for c in candidates] == [client_user.id]

    def test_directory_errors_are_wrapped(self, db_session, make_rule, client_user, monkeypatch):
        rule = _loaded(make_rule())
        monkeypatch.setitem(TRIGGER_REGISTRY, "client_dropoff", _BrokenTrigger())
        with pytest.raises(AudienceResolutionError) as exc:
            list(AudienceResolver(db_session).resolve(rule, NOW, WINDOW))
        assert exc.value.trigger_type == "client_dropoff"
        assert "directory offline" in str(exc.value)
