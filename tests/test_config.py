import json

import pytest

from flickr_crawler.config import config_to_parser_defaults, flatten_config, load_config_file


def test_flatten_config_joins_section_names():
    assert flatten_config({"search": {"hard_cap": 4000}, "state_dir": "s"}) == {
        "search_hard_cap": 4000,
        "state_dir": "s",
    }


def test_yaml_sections_map_to_parser_defaults(tmp_path):
    path = tmp_path / "crawler.yaml"
    path.write_text(
        "network:\n"
        "  request_interval_seconds: 1\n"
        "  max_retries: 5\n"
        "search:\n"
        "  accept_threshold: 2500\n"
        "  divergence_repeat_threshold: 7\n"
        "download:\n"
        "  max_files_per_chunk: 500\n"
        "logging:\n"
        "  show_progress: 'no'\n"
        "state_dir: /var/lib/crawler\n",
        encoding="utf-8",
    )

    defaults = config_to_parser_defaults(load_config_file(path))

    assert defaults == {
        "request_interval_seconds": 1.0,
        "max_retries": 5,
        "accept_threshold": 2500,
        "divergence_repeat_threshold": 7,
        "max_files_per_chunk": 500,
        "show_progress": False,
        "state_dir": "/var/lib/crawler",
    }


def test_json_config_is_supported(tmp_path):
    path = tmp_path / "crawler.json"
    path.write_text(json.dumps({"hard_cap": 3900}), encoding="utf-8")

    assert config_to_parser_defaults(load_config_file(path)) == {"hard_cap": 3900}


def test_rejects_bad_config(tmp_path):
    with pytest.raises(SystemExit):
        load_config_file(tmp_path / "missing.yaml")

    ini = tmp_path / "crawler.ini"
    ini.write_text("[search]\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        load_config_file(ini)

    with pytest.raises(SystemExit):
        config_to_parser_defaults({"search": {"hard_cap": "lots"}})
