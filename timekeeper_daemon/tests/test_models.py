"""
Tests for the SQLAlchemy models and enums.
"""

import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from timekeeper_daemon.models import Category, TimerSession, User


@pytest.mark.parametrize(
    "value,expected",
    [
        ("Computer", Category.COMPUTER),
        ("Gaming Console", Category.GAMING_CONSOLE),
        ("GAMING_CONSOLE", Category.GAMING_CONSOLE),
        ("gaming console", Category.GAMING_CONSOLE),
        (" TV ", Category.TV),
        (Category.PHONE, Category.PHONE),
    ],
)
def test_category_parse(value, expected):
    assert Category.parse(value) is expected


@pytest.mark.parametrize("value", ["Fridge", "", None, 3])
def test_category_parse_rejects_unknown(value):
    with pytest.raises(ValueError):
        Category.parse(value)


def test_user_repr(storage):
    user_id = storage.add_user("dana", is_admin=True)
    with storage.SessionLocal() as db:
        repr_str = repr(db.get(User, user_id))
    assert "<User(" in repr_str
    assert "username=dana" in repr_str
    assert "is_admin=True" in repr_str


def test_timer_repr(storage, laptop):
    repr_str = repr(storage.get_timer(laptop))
    assert "<Timer(" in repr_str
    assert "name=Laptop" in repr_str
    assert "active=True" in repr_str


def test_session_status_constraint(storage, laptop):
    """A running session must carry started_at."""
    with pytest.raises(IntegrityError):
        with storage.SessionLocal() as db:
            with db.begin():
                db.add(
                    TimerSession(
                        timer_id=laptop,
                        session_date=datetime.date(2026, 10, 14),
                        elapsed_seconds=0,
                        bonus_seconds=0,
                        status="running",
                        started_at=None,
                        warning_sent=False,
                        expired_sent=False,
                    )
                )


def test_one_session_per_timer_and_date(storage, laptop):
    day = datetime.date(2026, 10, 14)
    with pytest.raises(IntegrityError):
        with storage.SessionLocal() as db:
            with db.begin():
                for _ in range(2):
                    db.add(
                        TimerSession(
                            timer_id=laptop,
                            session_date=day,
                            elapsed_seconds=0,
                            bonus_seconds=0,
                            status="idle",
                            warning_sent=False,
                            expired_sent=False,
                        )
                    )
