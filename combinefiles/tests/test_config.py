import datetime
import os

import pytest

from combinefiles.core.config import (
    DEFAULT_OUTPUT_FILE,
    CombineConfig,
    ConfigError,
    config_from_mapping,
    load_config,
)
from combinefiles.core.merge import TruncationPolicy


def test_defaults_validate():
    cfg = CombineConfig().validate()
    assert cfg.policy is TruncationPolicy.INCLUDE_PARTIAL
    assert cfg.output_file == DEFAULT_OUTPUT_FILE
    assert cfg.recursive is True
    assert cfg.max_total_tokens == 0
    assert cfg.log_level == "INFO"


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "combine.yml"
    path.write_text(
        "\n".join([
            "source: src",
            "extensions: [py, md]",
            "exclude_patterns:",
            "  - '\\.min\\.js$'",
            "min_size: 1KB",
            "max_size: 10MB",
            "min_date: 2024-01-01",
            "policy: exclude",
            "max_total_tokens: 5000",
            "order: size-asc",
            "log_level: debug",
        ]),
        encoding="utf-8",
    )
    cfg = load_config(str(path))
    assert cfg.source == "src"
    assert cfg.extensions == ["py", "md"]
    assert cfg.exclude_patterns == [r"\.min\.js$"]
    assert cfg.min_size == 1024
    assert cfg.max_size == 10 * 1024 * 1024
    assert cfg.min_date == datetime.date(2024, 1, 1)
    assert cfg.policy is TruncationPolicy.EXCLUDE_COMPLETELY
    assert cfg.max_total_tokens == 5000
    assert cfg.order == "size-asc"
    assert cfg.log_level == "DEBUG"


def test_empty_yaml_gives_defaults(tmp_path):
    path = tmp_path / "empty.yml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == CombineConfig().validate()


def test_unknown_key_is_rejected():
    with pytest.raises(ConfigError, match="max_tokens_total"):
        config_from_mapping({"max_tokens_total": 10})


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "nope.yml"))


def test_malformed_yaml(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("source: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="malformed"):
        load_config(str(path))


def test_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "list.yml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


@pytest.mark.parametrize(
    "data,key",
    [
        ({"policy": "truncate"}, "policy"),
        ({"max_total_tokens": -1}, "max_total_tokens"),
        ({"max_lines_per_file": "many"}, "max_lines_per_file"),
        ({"max_tokens_per_page": True}, "max_tokens_per_page"),
        ({"min_size": "lots"}, "min_size"),
        ({"min_size": "2MB", "max_size": "1MB"}, "max_size"),
        ({"min_date": "yesterday"}, "min_date"),
        ({"min_date": "2024-02-01", "max_date": "2024-01-01"}, "max_date"),
        ({"order": "random"}, "order"),
        ({"exclude_patterns": ["("]}, "exclude_patterns"),
        ({"log_level": "LOUD"}, "log_level"),
        ({"recursive": "maybe"}, "recursive"),
        ({"extensions": 5}, "extensions"),
        ({"output_file": None}, "output_file"),
    ],
)
def test_validation_names_the_key(data, key):
    with pytest.raises(ConfigError, match=key):
        config_from_mapping(data)


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)


def test_comma_separated_lists():
    cfg = config_from_mapping({"extensions": ".py, .md", "exclude_files": "a.txt,b.txt"})
    assert cfg.extensions == [".py", ".md"]
    assert cfg.exclude_files == ["a.txt", "b.txt"]


def test_console_output_needs_no_file():
    cfg = config_from_mapping({"output_to_console": True, "output_file": None})
    assert cfg.output_path is None


def test_output_path_relative_to_base_dir(tmp_path):
    cfg = config_from_mapping({"base_dir": str(tmp_path), "output_file": "out.txt"})
    assert cfg.output_path == os.path.join(str(tmp_path), "out.txt")


def test_merged_overrides_skip_none():
    base = config_from_mapping({"policy": "exclude", "max_total_tokens": 100})
    cfg = base.merged({"max_total_tokens": 50, "policy": None}).validate()
    assert cfg.max_total_tokens == 50
    assert cfg.policy is TruncationPolicy.EXCLUDE_COMPLETELY
    assert base.max_total_tokens == 100


def test_merged_rejects_unknown_keys():
    with pytest.raises(ConfigError):
        CombineConfig().merged({"bogus": 1})


def test_validate_is_idempotent():
    cfg = config_from_mapping({"min_size": "1KB", "min_date": "2024-01-01", "policy": "paginate"})
    again = cfg.validate()
    assert again.min_size == 1024
    assert again.policy is TruncationPolicy.PAGINATE_OUTPUT
