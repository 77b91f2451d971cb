import configparser
from datetime import timedelta

import pytest

from engine_cache.exceptions import ConfigurationError
from engine_cache.models.config import DEFAULT_MANIFEST_URL, EngineCacheConfig
from engine_cache.storage.config_manager import ConfigManager, default_settings


def test_missing_file_uses_defaults(tmp_path):
    config = ConfigManager(tmp_path / "config.ini").load_config()

    assert config.manifest_url == DEFAULT_MANIFEST_URL
    assert config.engines_dir.endswith("engines")
    assert config.max_installations == 5
    assert config.manifest_ttl_seconds == 300
    assert config.config_path == str(tmp_path)


def test_saved_config_round_trips(tmp_path):
    manager = ConfigManager(tmp_path / "config.ini")
    manager.save_new_config(
        {"engines_dir": str(tmp_path / "engines"), "max_installations": 2}
    )

    config = manager.load_config()

    assert config.engines_dir == str(tmp_path / "engines")
    assert config.max_installations == 2
    assert config.download_attempts == 3


def test_blank_limits_mean_unlimited(tmp_path):
    path = tmp_path / "config.ini"
    ConfigManager(path).save_new_config(
        {"engines_dir": str(tmp_path), "max_installations": None, "max_age_days": None}
    )

    config = ConfigManager(path).load_config()

    assert config.max_installations is None
    assert config.max_age_days is None
    assert config.cull_policy().is_unbounded


def test_cull_policy_from_config():
    config = EngineCacheConfig(engines_dir="/tmp/e", max_installations=3, max_age_days=7)
    policy = config.cull_policy()

    assert policy.max_installations == 3
    assert policy.max_age == timedelta(days=7)


def test_cli_options_override_file(tmp_path):
    path = tmp_path / "config.ini"
    ConfigManager(path).save_new_config({"engines_dir": str(tmp_path)})

    config = ConfigManager(path).load_config({"platform": "win-x64"})

    assert config.platform == "win-x64"


def test_missing_keys_are_migrated(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text(f"[DEFAULT]\nengines_dir = {tmp_path}\n", encoding="utf-8")

    config = ConfigManager(path).load_config()

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path, encoding="utf-8")
    assert set(parser["DEFAULT"]) == set(default_settings())
    assert config.engines_dir == str(tmp_path)


@pytest.mark.parametrize(
    "line",
    [
        "download_attempts = many",
        "download_attempts = 0",
        "manifest_url = ftp://example.test/manifest.json",
        "max_age_days = -1",
    ],
)
def test_invalid_values_raise_configuration_error(tmp_path, line):
    path = tmp_path / "config.ini"
    ConfigManager(path).save_new_config({"engines_dir": str(tmp_path)})
    key = line.split(" = ")[0]
    lines = [
        entry for entry in path.read_text().splitlines() if not entry.startswith(key)
    ]
    path.write_text("\n".join(lines + [line]) + "\n")

    with pytest.raises(ConfigurationError):
        ConfigManager(path).load_config()


def test_unparseable_file_raises_configuration_error(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("this is not an ini file\n")

    with pytest.raises(ConfigurationError):
        ConfigManager(path).load_config()
