import pytest

from flickr_crawler.checkpoint import (
    CheckpointStore,
    append_interval,
    checkpoint_path_for,
    plan_downloads,
    read_interval_log,
)
from flickr_crawler.models import Interval, IntervalFormatError

A = Interval(9000, 9999, 14, 3500)
B = Interval(8000, 8999, 0, 0)
C = Interval(7000, 7999, 13, 3200)
D = Interval(6000, 6999, 16, 3999)


def test_interval_line_format_matches_positional_fields():
    line = C.to_line()

    assert line == "[ 7000 , 7999 ] results in 3200 results over 13 pages."
    fields = line.split(" ")
    assert (fields[1], fields[3], fields[7], fields[10]) == ("7000", "7999", "3200", "13")
    parsed = Interval.from_line(line)
    assert (parsed.min_date, parsed.max_date, parsed.result_count, parsed.page_count) == (7000, 7999, 3200, 13)


def test_interval_identity_ignores_counts():
    assert Interval(1, 2, 3, 700) == Interval(1, 2, 0, 0)
    assert hash(Interval(1, 2, 3, 700)) == hash(Interval(1, 2))
    assert Interval(1, 2) != Interval(1, 3)


@pytest.mark.parametrize(
    "line",
    [
        "",
        "[ 1 , 2 ] results in 3 results over 4",
        "[ 1 , two ] results in 3 results over 4 pages.",
        "( 1 , 2 ) results in 3 results over 4 pages.",
        "[ 5 , 2 ] results in 3 results over 4 pages.",
        "[ 1 , 2 ] results in -3 results over 4 pages.",
        "[ -5 , 3 ] results in 10 results over 1 pages.",
    ],
)
def test_malformed_lines_raise_interval_format_error(line):
    with pytest.raises(IntervalFormatError):
        Interval.from_line(line)


def test_read_interval_log_skips_blank_lines(tmp_path):
    log_path = tmp_path / "intervals.txt"
    append_interval(log_path, A)
    with open(log_path, "a", encoding="utf-8") as handle:
        handle.write("\n")
    append_interval(log_path, B)

    assert read_interval_log(log_path) == [A, B]
    assert read_interval_log(tmp_path / "missing.txt") == []


def test_checkpoint_overwrites_single_line(tmp_path):
    store = CheckpointStore(tmp_path / "state" / "intervals.txt.last_interval")
    assert store.load() is None

    store.save(A)
    store.save(C)

    assert store.path.read_text(encoding="utf-8") == C.to_line() + "\n"
    loaded = store.load()
    assert loaded == C and loaded.page_count == 13
    assert not store.path.with_suffix(store.path.suffix + ".tmp").exists()

    store.clear()
    assert store.load() is None


def test_corrupt_checkpoint_is_reported(tmp_path):
    store = CheckpointStore(tmp_path / "ckpt")
    store.path.write_text("[ 1 , 2 ] results in", encoding="utf-8")

    with pytest.raises(IntervalFormatError):
        store.load()


def test_checkpoint_path_is_keyed_by_log_name(tmp_path):
    path = checkpoint_path_for(tmp_path / "state", tmp_path / "logs" / "intervals.txt")
    assert path == tmp_path / "state" / "intervals.txt.last_interval"


def test_plan_without_checkpoint_enqueues_all_but_skip_markers():
    plan = plan_downloads([A, B, C, D], None)

    assert plan.queue == [A, C, D]
    assert plan.skipped == 1
    assert plan.total_pages == 14 + 13 + 16
    assert plan.total_results == 3500 + 3200 + 3999


def test_plan_skips_strictly_before_checkpoint():
    plan = plan_downloads([A, B, C, D], Interval(7000, 7999))

    assert plan.queue == [C, D]
    assert plan.skipped == 2
    assert plan.checkpoint_found


def test_plan_with_checkpoint_on_last_interval_reverifies_it():
    plan = plan_downloads([A, B, C, D], D)

    assert plan.queue == [D]
    assert plan.skipped == 3


def test_plan_with_unknown_checkpoint_replays_whole_log():
    plan = plan_downloads([A, B, C, D], Interval(1, 2))

    assert plan.queue == [A, C, D]
    assert not plan.checkpoint_found
