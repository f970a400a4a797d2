"""
Unit tests for run configuration loading.
"""

from pathlib import Path

import pytest

from converge.engine.config import CONFIG_ENV, RunConfig, load_config, split_tags
from converge.engine.errors import ParseError


class TestRunConfig:

    def test_defaults(self):
        config = RunConfig()
        assert config.forks == 5
        assert config.check_mode is False
        assert config.task_timeout is None
        assert (config.variable_start, config.variable_end) == ("{{", "}}")

    def test_replace_ignores_none(self):
        """Flags the user did not pass keep the configured value."""
        config = RunConfig(forks=10, check_mode=True).replace(forks=None, check_mode=None, limit="web")
        assert config.forks == 10
        assert config.check_mode is True
        assert config.limit == "web"

    @pytest.mark.parametrize("kwargs", [
        {"forks": 0},
        {"task_timeout": 0},
        {"settle_delay": -1},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RunConfig(**kwargs)

    def test_extra_vars_are_read_only(self):
        config = RunConfig(extra_vars={"a": 1})
        with pytest.raises(TypeError):
            config.extra_vars["a"] = 2


class TestLoadConfig:

    def test_missing_file_gives_defaults(self, tmp_path: Path):
        assert load_config(tmp_path / "converge.yml") == RunConfig()

    def test_loads_defaults_section(self, tmp_path: Path):
        path = tmp_path / "converge.yml"
        path.write_text(
            "defaults:\n"
            "  forks: 12\n"
            "  tags: deploy, config\n"
            "  task_timeout: 30\n"
            "  variable_start: '${'\n"
            "  variable_end: '}'\n"
        )
        config = load_config(path)
        assert config.forks == 12
        assert config.tags == ("deploy", "config")
        assert config.task_timeout == 30
        assert config.variable_start == "${"

    def test_environment_variable(self, tmp_path: Path, monkeypatch):
        path = tmp_path / "custom.yml"
        path.write_text("defaults:\n  forks: 3\n")
        monkeypatch.setenv(CONFIG_ENV, str(path))
        assert load_config().forks == 3

    def test_unknown_option(self, tmp_path: Path):
        path = tmp_path / "converge.yml"
        path.write_text("defaults:\n  fork: 3\n")
        with pytest.raises(ParseError, match="Unknown config option"):
            load_config(path)

    def test_invalid_value(self, tmp_path: Path):
        path = tmp_path / "converge.yml"
        path.write_text("defaults:\n  forks: 0\n")
        with pytest.raises(ParseError, match="forks must be at least 1"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "converge.yml"
        path.write_text("- forks\n")
        with pytest.raises(ParseError, match="mapping"):
            load_config(path)


@pytest.mark.parametrize("value,expected", [
    (None, ()),
    ("a, b,,c", ("a", "b", "c")),
    (["a", 1], ("a", "1")),
])
def test_split_tags(value, expected):
    assert split_tags(value) == expected
