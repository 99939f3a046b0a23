import json

import pytest

from conftest import T, FakeSearchClient
from flickr_crawler import cli
from flickr_crawler.checkpoint import read_interval_log
from flickr_crawler.models import Interval


@pytest.fixture
def fake_client(monkeypatch):
    created = []

    def oracle(min_date, max_date, page, details):
        return max_date - min_date

    def build_client(args, stats):
        client = FakeSearchClient(oracle)
        client.stats = stats
        client.close = lambda: None
        created.append((args, client))
        return client

    monkeypatch.setattr(cli, "build_client", build_client)
    return created


def base_argv(tmp_path, command, *extra):
    return [
        "test-key",
        command,
        str(T - 10000),
        str(tmp_path / "intervals.txt"),
        str(tmp_path / "data"),
        *extra,
        "--state-dir",
        str(tmp_path / "state"),
        "--logs-dir",
        str(tmp_path / "logs"),
        "--request-interval-seconds",
        "0",
        "--no-progress",
    ]


def latest_summary(tmp_path):
    run_dirs = sorted((tmp_path / "logs").iterdir())
    return json.loads((run_dirs[-1] / "summary.json").read_text(encoding="utf-8"))


def test_parse_args_positional_surface(tmp_path):
    args = cli.parse_args(base_argv(tmp_path, "scan", "proxy.local", "3128"))

    assert args.api_key == "test-key"
    assert args.command == "scan"
    assert args.end_timestamp == T - 10000
    assert args.proxy_host == "proxy.local"
    assert args.proxy_port == 3128
    assert args.accept_threshold == 3000 and args.hard_cap == 4000


def test_parse_args_requires_proxy_pair(tmp_path):
    with pytest.raises(SystemExit):
        cli.parse_args(base_argv(tmp_path, "scan", "proxy.local"))


def test_config_file_supplies_defaults(tmp_path):
    config = tmp_path / "crawler.yaml"
    config.write_text("search:\n  hard_cap: 3900\n", encoding="utf-8")

    args = cli.parse_args(base_argv(tmp_path, "scan", "--config", str(config)))

    assert args.hard_cap == 3900


def test_api_key_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv(cli.API_KEY_ENV, "from-env")
    assert cli.resolve_api_key("-") == "from-env"

    monkeypatch.delenv(cli.API_KEY_ENV)
    with pytest.raises(SystemExit):
        cli.resolve_api_key("-")


def test_scan_then_download(tmp_path, fake_client, monkeypatch):
    monkeypatch.setattr(cli.time, "time", lambda: T)
    cli.main(base_argv(tmp_path, "scan"))

    intervals = read_interval_log(tmp_path / "intervals.txt")
    assert len(intervals) == 3
    assert intervals[0].max_date == T
    summary = latest_summary(tmp_path)
    assert summary["status"] == "completed"
    assert summary["intervals_found"] == 3

    cli.main(base_argv(tmp_path, "download"))

    pages = sum(interval.page_count for interval in intervals)
    chunk = tmp_path / "data" / "chunk_001"
    assert len(list(chunk.iterdir())) == pages
    checkpoint = (tmp_path / "state" / "intervals.txt.last_interval").read_text(encoding="utf-8")
    assert Interval.from_line(checkpoint.strip()) == intervals[-1]


def test_scan_resumes_from_log_tail(tmp_path, fake_client):
    log_path = tmp_path / "intervals.txt"
    log_path.write_text(Interval(T - 6000, T, 14, 3500).to_line() + "\n", encoding="utf-8")

    cli.main(base_argv(tmp_path, "scan"))

    intervals = read_interval_log(log_path)
    assert intervals[1].max_date == T - 6001
    assert intervals[2].max_date == intervals[1].min_date - 1
    assert latest_summary(tmp_path)["intervals_found"] == 2


def test_malformed_log_fails_cleanly(tmp_path, fake_client):
    (tmp_path / "intervals.txt").write_text("[ 1 , 2 ] broken\n", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        cli.main(base_argv(tmp_path, "download"))

    assert "Cannot resume" in str(excinfo.value)
    assert latest_summary(tmp_path)["status"] == "failed"


def test_download_requires_existing_log(tmp_path, fake_client):
    with pytest.raises(SystemExit):
        cli.main(base_argv(tmp_path, "download"))


def test_scan_rejects_end_before_epoch(tmp_path):
    args = cli.parse_args(base_argv(tmp_path, "scan"))
    args.end_timestamp = -10
    client = FakeSearchClient(lambda *call: 100)

    with pytest.raises(SystemExit) as excinfo:
        cli.run_scan(args, client)

    assert "epoch" in str(excinfo.value)
    assert client.calls == []
    assert not (tmp_path / "intervals.txt").exists()
