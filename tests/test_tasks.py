from datetime import datetime, timedelta

from guias import tasks
from guias.database import PasswordReset, SessionLocal


def add_code(session, code, created_at, used=False, ttl=timedelta(minutes=30)):
    session.add(
        PasswordReset(
            email="alice@example.com",
            code=code,
            created_at=created_at,
            expires_at=created_at + ttl,
            used=used,
        )
    )


def test_purge_removes_only_stale_codes():
    now = datetime(2024, 6, 1, 8, 0, 0)
    session = SessionLocal()
    try:
        add_code(session, "111111", now - timedelta(days=10), used=True)
        add_code(session, "222222", now - timedelta(days=8))
        add_code(session, "333333", now - timedelta(days=2), used=True)
        add_code(session, "444444", now - timedelta(minutes=5))
        session.commit()

        deleted = tasks.purge_stale_codes(session, retention_days=7, now=now)
        session.commit()

        remaining = sorted(row.code for row in session.query(PasswordReset).all())
        assert deleted == 2
        assert remaining == ["333333", "444444"]
    finally:
        session.close()


def test_purge_task_commits():
    session = SessionLocal()
    try:
        add_code(session, "555555", datetime(2000, 1, 1), used=True)
        session.commit()
    finally:
        session.close()

    assert tasks.purge_reset_codes.run() == 1
