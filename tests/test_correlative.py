import pytest

from guias.correlative import CorrelativeGenerator, format_correlative, next_number
from guias.database import Guia, SessionLocal, utcnow

PREFIX = "T002-"


def store_guia(session, name, user_id):
    session.add(Guia(name=name, file_data=b"%PDF", uploaded_at=utcnow(), user_id=user_id))
    session.commit()


def test_empty_table_starts_at_one_hundred():
    session = SessionLocal()
    try:
        assert CorrelativeGenerator(PREFIX).next_value(session) == "T002-00000100"
    finally:
        session.close()


def test_follows_the_most_recent_guia(user):
    session = SessionLocal()
    try:
        store_guia(session, "T002-00000100", user.id)
        assert CorrelativeGenerator(PREFIX).next_value(session) == "T002-00000101"
        store_guia(session, "T002-00000101.pdf", user.id)
        assert CorrelativeGenerator(PREFIX).next_value(session) == "T002-00000102"
    finally:
        session.close()


def test_skips_past_a_collided_name(user):
    session = SessionLocal()
    try:
        store_guia(session, "upload.pdf", user.id)
        generator = CorrelativeGenerator(PREFIX)
        assert generator.next_value(session) == "T002-00000100"
        assert generator.next_value(session, collided="T002-00000100") == "T002-00000101"
        # A stale collision never pulls the number backwards.
        store_guia(session, "T002-00000200", user.id)
        assert generator.next_value(session, collided="T002-00000100") == "T002-00000201"
    finally:
        session.close()


@pytest.mark.parametrize(
    "last, expected",
    [
        (None, 100),
        ("", 100),
        ("T002-00000100", 101),
        ("T002-00000999.docx", 1000),
        ("scan-T002-00000042", 43),
        ("no-prefix-here", 100),
        ("T002-abc", 100),
    ],
)
def test_next_number(last, expected):
    assert next_number(last, PREFIX) == expected


def test_format_pads_to_eight_digits():
    assert format_correlative(PREFIX, 7) == "T002-00000007"
    assert format_correlative(PREFIX, 123456789) == "T002-123456789"
