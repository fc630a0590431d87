"""
Unit tests for the config module of timekeeper_daemon.
"""

import pytest
import yaml

from timekeeper_daemon.config import CONFIG_ENV_VAR, Config, ConfigError


@pytest.fixture
def write_config(tmp_path):
    """Writes a user config file and returns its path."""

    def _write(data, name="config.yaml"):
        path = tmp_path / name
        with open(path, "w") as f:
            yaml.dump(data, f)
        return str(path)

    return _write


def test_config_validation_valid_config(config, test_config):
    data, config_path = test_config
    assert config.config_path == config_path
    assert config.get("db_path") == data["db_path"]
    assert config["users"]["alice"]["is_admin"] is True


def test_defaults_are_merged_under_user_config(write_config, tmp_path):
    config = Config(
        write_config(
            {
                "db_path": str(tmp_path / "db.sqlite"),
                "notifications": {"warning_seconds": 300},
            }
        )
    )
    assert config["notifications"]["warning_seconds"] == 300
    # Untouched keys of the same section come from default-config.yaml
    assert config["notifications"]["backend"] == "log"
    assert config["timezone"] == "Australia/Melbourne"
    assert config["sweep_interval_seconds"] == 300
    assert config["storage"]["write_retries"] == 5
    assert config.get("missing", "fallback") == "fallback"


def test_config_path_from_environment(write_config, monkeypatch):
    path = write_config({"timezone": "Europe/Berlin"}, name="env.yaml")
    monkeypatch.setenv(CONFIG_ENV_VAR, path)
    config = Config()
    assert config.config_path == path
    assert config["timezone"] == "Europe/Berlin"


def test_explicit_path_wins_over_environment(write_config, monkeypatch):
    monkeypatch.setenv(CONFIG_ENV_VAR, write_config({"timezone": "Europe/Berlin"}, name="env.yaml"))
    path = write_config({"timezone": "Asia/Tokyo"})
    assert Config(path)["timezone"] == "Asia/Tokyo"


@pytest.mark.parametrize(
    "data,message",
    [
        ({"logging": {"level": "LOUD"}}, "Invalid log level"),
        ({"logging": {"format": "xml"}}, "Invalid log format"),
        ({"logging": {"target": 2}}, "'logging.target' must be"),
        ({"db_path": 42}, "'db_path' is missing or not a string"),
        ({"timezone": "Mars/Olympus_Mons"}, "Unknown timezone"),
        ({"sweep_interval_seconds": 0}, "'sweep_interval_seconds' must be positive"),
        ({"sweep_interval_seconds": "5m"}, "'sweep_interval_seconds' must be an integer"),
        ({"storage": {"db_timeout": -1}}, "'storage.db_timeout' must be positive"),
        ({"storage": {"write_retries": True}}, "'storage.write_retries' must be an integer"),
        ({"notifications": {"backend": "pager"}}, "Invalid notification backend"),
        ({"notifications": {"warning_seconds": -600}}, "'notifications.warning_seconds' must be positive"),
        ({"notifications": {"backend": "email"}, "smtp": {"host": ""}}, "'smtp.host' is required"),
        ({"users": ["bob"]}, "'users' section must be a dictionary"),
        ({"users": {"bob": "kid"}}, "Configuration for user 'bob' must be a dictionary"),
        ({"users": {"bob": {"email": "not-an-address"}}}, "'bob.email' is not a valid address"),
        ({"users": {"bob": {"is_admin": "yes"}}}, "'bob.is_admin' must be true or false"),
    ],
)
def test_config_validation_errors(write_config, data, message):
    with pytest.raises(ConfigError) as exc_info:
        Config(write_config(data))
    assert message in str(exc_info.value)


def test_invalid_yaml_is_a_config_error(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("users: [unclosed\n")
    with pytest.raises(ConfigError):
        Config(str(path))


def test_email_backend_with_host(write_config):
    config = Config(
        write_config(
            {
                "notifications": {"backend": "email"},
                "smtp": {"host": "mail.example.com", "port": 465},
            }
        )
    )
    assert config["smtp"]["host"] == "mail.example.com"
    assert config["smtp"]["starttls"] is True
