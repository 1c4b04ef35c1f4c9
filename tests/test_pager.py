import pytest

from tenantsearch.exceptions import ValidationError
from tenantsearch.pager import Pager, decode_cursor, encode_cursor


def test_normalize_applies_default_limit() -> None:
    pager = Pager().normalize(default_limit=30, max_limit=1000)
    assert pager.limit == 30
    assert pager.page == 1
    assert pager.offset == 0


@pytest.mark.parametrize(
    "limit,page,expected_limit,expected_page",
    [(0, 0, 1, 1), (-5, -2, 1, 1), (5000, 3, 1000, 3), (10, 2, 10, 2)],
)
def test_normalize_clamps_out_of_range_values(
    limit: int, page: int, expected_limit: int, expected_page: int
) -> None:
    pager = Pager(page=page, limit=limit).normalize(max_limit=1000)
    assert pager.limit == expected_limit
    assert pager.page == expected_page


def test_blank_sort_field_is_ignored() -> None:
    pager = Pager(sort_field="  ").normalize(max_limit=10)
    assert pager.sort_field is None


def test_offset_follows_page_and_limit() -> None:
    assert Pager(page=3, limit=20).offset == 40


def test_advance_moves_cursor_forward() -> None:
    pager = Pager(limit=2)
    assert pager.advance() is False
    pager.next_cursor = "abc"
    assert pager.advance() is True
    assert pager.cursor == "abc"
    assert pager.next_cursor is None
    assert pager.page == 2


def test_reset_clears_position() -> None:
    pager = Pager(page=4, cursor="x", next_cursor="y", count=9)
    pager.reset()
    assert (pager.page, pager.cursor, pager.next_cursor, pager.count) == (1, None, None, 0)


def test_cursor_tokens_are_opaque_and_decodable() -> None:
    token = encode_cursor([1.5, "doc-7"])
    assert "=" not in token
    assert decode_cursor(token) == [1.5, "doc-7"]


@pytest.mark.parametrize("token", ["!!!", "bm90IGpzb24", "eyJhIjogMX0"])
def test_malformed_cursor_is_rejected(token: str) -> None:
    # "not json" and {"a": 1} respectively for the last two
    with pytest.raises(ValidationError):
        decode_cursor(token)
