import re
from datetime import datetime, timedelta, timezone

from libraryhub.utils import (
    calculate_due_date,
    calculate_fine,
    clamp_page,
    generate_membership_id,
    like_pattern,
    overdue_days,
    page_envelope,
    parse_iso,
    to_iso,
)

UTC = timezone.utc


def test_fine_for_three_days_late():
    due = datetime(2025, 1, 1, tzinfo=UTC)
    assert calculate_fine(due, datetime(2025, 1, 4, tzinfo=UTC)) == 0.75


def test_no_fine_on_or_before_due_date():
    due = datetime(2025, 1, 1, tzinfo=UTC)
    assert calculate_fine(due, due) == 0
    assert calculate_fine(due, due - timedelta(days=2)) == 0


def test_partial_days_round_up():
    due = datetime(2025, 1, 1, tzinfo=UTC)
    assert overdue_days(due, due + timedelta(milliseconds=1)) == 1
    assert overdue_days(due, due + timedelta(days=1, seconds=1)) == 2
    assert calculate_fine(due, due + timedelta(days=1, hours=3), rate_per_day=0.5) == 1.0


def test_naive_datetimes_are_treated_as_utc():
    due = datetime(2025, 1, 1)
    assert overdue_days(due, datetime(2025, 1, 2, tzinfo=UTC)) == 1


def test_due_date_defaults_to_two_weeks():
    borrowed = datetime(2025, 3, 1, 10, 30, tzinfo=UTC)
    assert calculate_due_date(borrowed) == datetime(2025, 3, 15, 10, 30, tzinfo=UTC)


def test_membership_id_format():
    membership_id = generate_membership_id(datetime(2025, 6, 1, tzinfo=UTC))
    assert re.fullmatch(r"LIB2025\d{5}", membership_id)


def test_iso_round_trip_keeps_ordering():
    early = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
    late = datetime(2025, 1, 1, 9, 0, 0, 1, tzinfo=UTC)
    assert to_iso(early) < to_iso(late)
    assert parse_iso(to_iso(late)) == late
    assert to_iso(None) is None
    assert parse_iso("") is None


def test_clamp_page():
    assert clamp_page(None, None, 10, 100) == (1, 10)
    assert clamp_page(0, 500, 10, 100) == (1, 100)
    assert clamp_page(3, 0, 10, 100) == (3, 10)


def test_page_envelope():
    envelope = page_envelope(["a", "b"], page=2, limit=2, total_items=5)
    assert envelope == {
        "items": ["a", "b"],
        "page": 2,
        "limit": 2,
        "totalItems": 5,
        "totalPages": 3,
        "hasNextPage": True,
        "hasPrevPage": True,
    }


def test_like_pattern_escapes_wildcards():
    assert like_pattern("100%_done") == "%100\\%\\_done%"
