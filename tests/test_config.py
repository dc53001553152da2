from __future__ import annotations

import pytest

from weathermail.config import DEFAULT_REDIS_ADDR, Config, ConfigError


BASE_ENV = {
    "SMTP_HOST": "smtp.example.com",
    "SMTP_PORT": "465",
    "SMTP_USER": "bot@example.com",
    "SMTP_PASS": "pw",
    "REDIS_PASSWORD": "redis-pass",
    "BASE_URL": "https://weather.example.com",
}


def test_defaults_are_applied():
    config = Config.from_env(dict(BASE_ENV))

    assert config.smtp_port == 465
    assert config.smtp_from == "bot@example.com"
    assert config.redis_addr == DEFAULT_REDIS_ADDR
    assert config.redis_host == "redis"
    assert config.redis_port == 6379
    assert config.weatherapi_com_key == ""
    assert config.openweathermap_org_key == ""
    assert config.database_path.endswith("weather.db")


def test_explicit_values_win():
    env = dict(
        BASE_ENV,
        SMTP_FROM="noreply@example.com",
        REDIS_ADDR="cache.internal:6390",
        DATABASE_PATH="/tmp/subs.db",
        BASE_URL="https://weather.example.com/",
    )

    config = Config.from_env(env)

    assert config.smtp_from == "noreply@example.com"
    assert (config.redis_host, config.redis_port) == ("cache.internal", 6390)
    assert config.database_path == "/tmp/subs.db"
    assert config.base_url == "https://weather.example.com"


@pytest.mark.parametrize("missing", ["SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "REDIS_PASSWORD", "BASE_URL"])
def test_required_variables(missing):
    env = dict(BASE_ENV)
    del env[missing]

    with pytest.raises(ConfigError, match=missing):
        Config.from_env(env)


def test_malformed_port_is_rejected():
    with pytest.raises(ConfigError, match="invalid SMTP_PORT"):
        Config.from_env(dict(BASE_ENV, SMTP_PORT="smtp"))
