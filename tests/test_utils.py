from datetime import datetime, timedelta, timezone

from app.utils import (
    MergeCandidate,
    coerce_positive_id,
    dedupe_ids,
    format_timestamp,
    merge_latest,
    newest_first,
    parse_timestamp,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_parse_timestamp_accepts_zulu_suffix():
    assert parse_timestamp("2024-05-01T12:00:00Z") == NOW
    assert parse_timestamp("2024-05-01T12:00:00") == NOW
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_format_timestamp_round_trips_zulu():
    assert format_timestamp(NOW) == "2024-05-01T12:00:00Z"
    assert format_timestamp(None) is None


def test_merge_latest_last_applied_wins_ties():
    local = MergeCandidate(42, "local", NOW, "local")
    remote = MergeCandidate(42, "remote", NOW, "remote")

    assert merge_latest([local, remote])[42].body == "remote"
    assert merge_latest([remote, local])[42].body == "local"


def test_merge_latest_missing_timestamp_loses():
    undated = MergeCandidate(42, "undated", None, "local")
    dated = MergeCandidate(42, "dated", NOW, "remote")

    assert merge_latest([dated, undated])[42].body == "dated"


def test_newest_first_puts_undated_last():
    ordered = newest_first(
        [
            MergeCandidate(1, "a", None, "local"),
            MergeCandidate(2, "b", NOW - timedelta(days=1), "remote"),
            MergeCandidate(3, "c", NOW, "remote"),
        ]
    )

    assert [candidate.content_id for candidate in ordered] == [3, 2, 1]


def test_coerce_positive_id():
    assert coerce_positive_id(42) == 42
    assert coerce_positive_id(" 17 ") == 17
    assert coerce_positive_id(0) is None
    assert coerce_positive_id(-3) is None
    assert coerce_positive_id(True) is None
    assert coerce_positive_id("abc") is None
    assert coerce_positive_id(4.0) is None


def test_dedupe_ids_preserves_order():
    assert dedupe_ids([3, 1, 3, 2, 1]) == [3, 1, 2]


def test_coerce_positive_id_rejects_non_ascii_digits():
    assert coerce_positive_id("²") is None
    assert coerce_positive_id("٣") is None
