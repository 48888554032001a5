"""Session lifecycle: single ACTIVE session per user, idle expiry and sweeps."""

import threading
from datetime import timedelta

import pytest

from fixerauth.service.sessions import SessionManager, classify_browser, classify_device
from fixerauth.storage.models import SessionState


@pytest.fixture
def sessions(store, clock, ids):
    return SessionManager(store, clock=clock, ids=ids)


class TestClassification:
    @pytest.mark.parametrize(
        "user_agent,expected",
        [
            ("Mozilla/5.0 (iPhone) Mobile Safari", "Mobile"),
            ("Mozilla/5.0 (Android; Tablet)", "Tablet"),
            # mobile outranks tablet
            ("TABLET with MOBILE radio", "Mobile"),
            ("Mozilla Chrome", "Desktop"),
            ("", "Desktop"),
            (None, "Unknown"),
        ],
    )
    def test_device(self, user_agent, expected):
        assert classify_device(user_agent) == expected

    @pytest.mark.parametrize(
        "user_agent,expected",
        [
            ("Mozilla Chrome", "Chrome"),
            ("mozilla firefox", "Firefox"),
            ("Mozilla/5.0 Edge/18", "Edge"),
            # Edge UAs usually advertise Chrome too; chrome is checked first
            ("Mozilla/5.0 Chrome/120 Safari Edg/120 Edge", "Chrome"),
            ("Safari", "Other"),
            (None, "Unknown"),
        ],
    )
    def test_browser(self, user_agent, expected):
        assert classify_browser(user_agent) == expected


class TestOpen:
    def test_open_classifies_and_activates(self, sessions, clock):
        session = sessions.open(42, "10.0.0.1", "Mozilla Chrome")

        assert session.state is SessionState.ACTIVE
        assert session.device == "Desktop"
        assert session.browser == "Chrome"
        assert session.client_ip == "10.0.0.1"
        assert session.started_at == clock.now()
        assert session.last_accessed_at == clock.now()
        assert session.ended_at is None

    def test_open_closes_previous_active(self, sessions, clock, store):
        first = sessions.open(42, "10.0.0.1", "Mozilla Chrome")
        clock.advance(minutes=5)
        second = sessions.open(42, "10.0.0.1", "Mozilla Chrome")

        previous = store.get_session(first.session_token)
        assert previous.state is SessionState.CLOSED
        assert previous.ended_at == clock.now()
        assert store.get_session(second.session_token).state is SessionState.ACTIVE
        assert len(sessions.list_for_user(42)) == 2

    def test_open_for_other_user_keeps_sessions(self, sessions, store):
        mine = sessions.open(42, None, None)
        sessions.open(43, None, None)

        assert store.get_session(mine.session_token).state is SessionState.ACTIVE

    def test_concurrent_opens_leave_one_active(self, sessions):
        workers = 12
        barrier = threading.Barrier(workers)
        errors = []

        def _open():
            try:
                barrier.wait()
                sessions.open(42, "10.0.0.1", "Mozilla Firefox")
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=_open) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert not errors
        states = [s.state for s in sessions.list_for_user(42)]
        assert len(states) == workers
        assert states.count(SessionState.ACTIVE) == 1
        assert states.count(SessionState.CLOSED) == workers - 1


class TestValidateAndTouch:
    def test_validate_within_idle_window(self, sessions, clock):
        session = sessions.open(42, None, None)

        clock.advance(hours=1, minutes=59)
        assert sessions.validate(session.session_token) is True

    def test_validate_does_not_extend(self, sessions, clock, store):
        session = sessions.open(42, None, None)

        clock.advance(hours=1)
        assert sessions.validate(session.session_token)
        assert store.get_session(session.session_token).last_accessed_at == session.started_at

    def test_idle_past_threshold_expires(self, sessions, clock, store):
        session = sessions.open(42, None, None)

        clock.advance(hours=2, seconds=1)
        assert sessions.validate(session.session_token) is False
        expired = store.get_session(session.session_token)
        assert expired.state is SessionState.EXPIRED
        assert expired.ended_at == clock.now()

    def test_touch_then_validate(self, sessions, clock):
        session = sessions.open(42, None, None)
        clock.advance(hours=1, minutes=30)
        assert sessions.touch(session.session_token) is True

        clock.advance(hours=1, minutes=59)
        assert sessions.validate(session.session_token) is True

        clock.advance(minutes=2)
        assert sessions.validate(session.session_token) is False

    def test_touch_ignores_terminal_and_unknown(self, sessions, store, clock):
        session = sessions.open(42, None, None)
        sessions.close(session.session_token)
        clock.advance(minutes=1)

        assert sessions.touch(session.session_token) is False
        assert sessions.touch("missing") is False
        assert sessions.touch(None) is False
        assert store.get_session(session.session_token).last_accessed_at == session.started_at

    def test_validate_unknown(self, sessions):
        assert sessions.validate("missing") is False
        assert sessions.validate(None) is False


class TestClose:
    def test_close_active(self, sessions, store):
        session = sessions.open(42, None, None)

        assert sessions.close(session.session_token) is True
        assert store.get_session(session.session_token).state is SessionState.CLOSED
        assert sessions.validate(session.session_token) is False

    def test_close_keeps_terminal_state(self, sessions, clock, store):
        session = sessions.open(42, None, None)
        clock.advance(hours=3)
        sessions.validate(session.session_token)
        ended_at = store.get_session(session.session_token).ended_at

        clock.advance(minutes=1)
        assert sessions.close(session.session_token) is True
        record = store.get_session(session.session_token)
        assert record.state is SessionState.EXPIRED
        assert record.ended_at == ended_at

    def test_close_unknown_is_noop(self, sessions):
        assert sessions.close("missing") is False
        assert sessions.close(None) is False

    def test_close_all_revokes(self, sessions, store):
        old = sessions.open(42, None, None)
        current = sessions.open(42, None, None)

        assert sessions.close_all_for_user(42) == 1
        assert store.get_session(current.session_token).state is SessionState.REVOKED
        # already CLOSED by the second open
        assert store.get_session(old.session_token).state is SessionState.CLOSED


class TestSweep:
    def test_sweep_idle_uses_day_threshold(self, sessions, clock, store):
        stale = sessions.open(42, None, None)
        clock.advance(hours=20)
        recent = sessions.open(43, None, None)
        clock.advance(hours=4, seconds=1)

        assert sessions.sweep_idle() == 1
        assert store.get_session(stale.session_token).state is SessionState.EXPIRED
        assert store.get_session(recent.session_token).state is SessionState.ACTIVE
        assert sessions.sweep_idle() == 0

    def test_list_for_user_newest_first(self, sessions, clock):
        first = sessions.open(42, None, None)
        clock.advance(seconds=1)
        second = sessions.open(42, None, None)

        assert [s.id for s in sessions.list_for_user(42)] == [second.id, first.id]
        assert sessions.list_for_user(99) == []


def test_custom_idle_timeout(store, clock, ids):
    sessions = SessionManager(store, clock=clock, ids=ids, idle_timeout=timedelta(minutes=10))
    session = sessions.open(1, None, None)

    clock.advance(minutes=11)
    assert sessions.validate(session.session_token) is False
