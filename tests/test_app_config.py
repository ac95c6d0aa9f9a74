"""Tests for the YAML-backed application settings."""

import pytest
import yaml

from sshcode.app_config import DEFAULT_APP_CONFIG, AppConfigStore
from sshcode.exceptions import ConfigurationError


def test_defaults_are_written_on_first_load(config) -> None:
    store = AppConfigStore(config)

    assert store.get() == DEFAULT_APP_CONFIG
    with open(config.app_config_file, encoding="utf-8") as f:
        assert yaml.safe_load(f) == DEFAULT_APP_CONFIG


def test_get_returns_a_copy(config) -> None:
    store = AppConfigStore(config)

    store.get()["general"]["theme"] = "light"

    assert store.get()["general"]["theme"] == "dark"


def test_save_replaces_top_level_sections(config) -> None:
    store = AppConfigStore(config)

    merged = store.save({"general": {"theme": "light"}})

    assert merged["general"] == {"theme": "light"}
    assert merged["terminal"] == DEFAULT_APP_CONFIG["terminal"]
    assert AppConfigStore(config).get()["general"] == {"theme": "light"}


def test_unknown_sections_are_kept(config) -> None:
    store = AppConfigStore(config)

    store.save({"plugins": {"enabled": ["git"]}})

    assert AppConfigStore(config).get()["plugins"] == {"enabled": ["git"]}


def test_save_rejects_non_mapping(config) -> None:
    with pytest.raises(ConfigurationError):
        AppConfigStore(config).save(["general"])


def test_invalid_yaml_falls_back_to_defaults(config) -> None:
    config.ensure_config_dir()
    config.app_config_file.write_text("general: [unclosed\n", encoding="utf-8")

    assert AppConfigStore(config).get() == DEFAULT_APP_CONFIG


def test_non_mapping_yaml_falls_back_to_defaults(config) -> None:
    config.ensure_config_dir()
    config.app_config_file.write_text("- just\n- a list\n", encoding="utf-8")

    assert AppConfigStore(config).get() == DEFAULT_APP_CONFIG
