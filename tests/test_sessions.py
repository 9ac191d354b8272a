from datetime import timedelta

import pytest

from errors import NotFound
from models import UserSession, utcnow
from utils.sessions import (
    create_session, get_active_session, get_client_ip, list_sessions, parse_user_agent, revoke_all_sessions,
    revoke_session
)

CHROME_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"
IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Version/17.0 Mobile/15E148 Safari/604.1"


@pytest.mark.parametrize("user_agent, expected", [
    (None, "Unknown Device"),
    ("", "Unknown Device"),
    (IPHONE_UA, "Mobile Device"),
    ("Mozilla/5.0 (Android 13; Tablet; rv:109.0)", "Tablet"),
    (CHROME_UA, "Chrome Browser"),
    ("Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0", "Firefox Browser"),
    ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Version/17.0 Safari/605.1.15", "Safari Browser"),
    ("curl/8.4.0", "Desktop Browser"),
])
def test_parse_user_agent(user_agent, expected):
    assert parse_user_agent(user_agent) == expected


def test_get_client_ip():
    assert get_client_ip({"x-forwarded-for": "203.0.113.7, 10.0.0.1"}, "10.0.0.1") == "203.0.113.7"
    assert get_client_ip({"x-real-ip": "203.0.113.8"}, "10.0.0.1") == "203.0.113.8"
    assert get_client_ip({}, "10.0.0.1") == "10.0.0.1"
    assert get_client_ip({}) == "unknown"


def test_create_session(db, test_user):
    session = create_session(db, test_user.id, "127.0.0.1", CHROME_UA)

    assert session.user_id == test_user.id
    assert session.device_info == "Chrome Browser"
    assert session.expires_at > utcnow() + timedelta(days=29)
    assert get_active_session(db, session.id).id == session.id


def test_get_active_session_ignores_expired(db, test_user):
    session = create_session(db, test_user.id)
    session.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    assert get_active_session(db, session.id) is None
    assert list_sessions(db, test_user.id) == []


def test_list_sessions_most_recent_first(db, test_user, other_user):
    older = create_session(db, test_user.id, "127.0.0.1", "first")
    newer = create_session(db, test_user.id, "127.0.0.2", "second")
    create_session(db, other_user.id, "127.0.0.3", "foreign")
    older.last_active_at = utcnow() - timedelta(hours=2)
    newer.last_active_at = utcnow() - timedelta(hours=1)
    db.commit()

    assert [s.id for s in list_sessions(db, test_user.id)] == [newer.id, older.id]

    older.last_active_at = utcnow()
    db.commit()

    assert [s.id for s in list_sessions(db, test_user.id)] == [older.id, newer.id]


def test_revoke_session(db, test_user):
    session_id = create_session(db, test_user.id).id

    revoke_session(db, session_id, test_user.id)

    assert get_active_session(db, session_id) is None


def test_revoke_session_of_another_user(db, test_user, other_user):
    """Revoking someone else's session fails and leaves it in place"""
    session = create_session(db, test_user.id)

    with pytest.raises(NotFound):
        revoke_session(db, session.id, other_user.id)

    assert get_active_session(db, session.id) is not None


def test_revoke_unknown_session(db, test_user):
    with pytest.raises(NotFound):
        revoke_session(db, "no-such-session", test_user.id)


def test_revoke_all_sessions_keeps_current(db, test_user, other_user):
    current = create_session(db, test_user.id)
    create_session(db, test_user.id)
    create_session(db, test_user.id)
    foreign = create_session(db, other_user.id)

    assert revoke_all_sessions(db, test_user.id, keep_session_id=current.id) == 2

    assert [s.id for s in list_sessions(db, test_user.id)] == [current.id]
    assert get_active_session(db, foreign.id) is not None


def test_revoke_all_sessions(db, test_user):
    create_session(db, test_user.id)
    create_session(db, test_user.id)

    assert revoke_all_sessions(db, test_user.id) == 2
    assert db.query(UserSession).filter(UserSession.user_id == test_user.id).count() == 0
