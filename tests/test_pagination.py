import pytest

from guias.database import SessionLocal, VistaCampo
from guias.errors import InvalidInputError
from guias.pagination import Paged, check_page_params, paginate, row_window


def seed_campos(count):
    session = SessionLocal()
    try:
        for number in range(count):
            session.add(VistaCampo(campo=f"C{number:03d}", desc_campo=f"CAMPO {number}"))
        session.commit()
    finally:
        session.close()


def page_of(page, size, all_records=False):
    session = SessionLocal()
    try:
        query = session.query(VistaCampo).order_by(VistaCampo.campo)
        return paginate(query, page, size, all_records)
    finally:
        session.close()


def test_row_window():
    assert row_window(1, 10) == (0, 10)
    assert row_window(3, 25) == (50, 75)


def test_paged_counters():
    paged = Paged(data=[], page=2, page_size=10, total_count=25)
    assert paged.total_pages == 3
    assert paged.has_previous
    assert paged.has_next


def test_paged_zero_page_size():
    paged = Paged(data=[], page=1, page_size=0, total_count=0)
    assert paged.total_pages == 0
    assert not paged.has_next


def test_windows_cover_every_row_once():
    seed_campos(23)

    seen = []
    for page in range(1, 4):
        result = page_of(page, 10)
        seen.extend(row.campo for row in result.data)
        assert result.total_count == 23
        assert result.total_pages == 3

    assert seen == [f"C{n:03d}" for n in range(23)]
    last = page_of(3, 10)
    assert len(last.data) == 3
    assert last.has_previous and not last.has_next


def test_page_past_the_end_is_empty():
    seed_campos(5)
    result = page_of(4, 10)
    assert result.data == []
    assert result.total_count == 5


def test_all_returns_everything_in_one_page():
    seed_campos(12)
    result = page_of(3, 5, all_records=True)
    assert len(result.data) == 12
    assert result.page == 1
    assert result.page_size == 12
    assert result.total_pages == 1
    assert not result.has_next


@pytest.mark.parametrize("page, size", [(0, 10), (-1, 10), (1, 0), (1, 101)])
def test_invalid_page_params(page, size):
    with pytest.raises(InvalidInputError):
        check_page_params(page, size, all_records=False)


def test_all_skips_page_param_checks():
    check_page_params(0, 0, all_records=True)


def test_custom_maximum_page_size():
    check_page_params(1, 50, False, max_page_size=50)
    with pytest.raises(InvalidInputError):
        check_page_params(1, 51, False, max_page_size=50)
