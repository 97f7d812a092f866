from __future__ import annotations

import json

import pytest

import services.config as config
from services.config_io import find_config, load_config
from services.error import ConfigError
from drivers.telegram import TelegramConfig
from drivers.whatsapp import WhatsAppConfig

_ENV = ("SERVER", "CONFIG", "PLATFORM", "BRIDGE_DATA_PATH", "LOG_LEVEL",
        "PING_INTERVAL", "RETRY_INTERVAL", "MAX_REPLY_DEPTH")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def base_env(monkeypatch):
    monkeypatch.setenv("SERVER", "ws://backend:8080/ws")
    monkeypatch.setenv("CONFIG", json.dumps({"prefix": "!", "owner": "42"}))
    monkeypatch.setenv("PLATFORM", "Telegram")


def test_settings_from_environment(base_env, monkeypatch) -> None:
    monkeypatch.setenv("PING_INTERVAL", "10")
    settings = config.load_settings()

    assert settings.server == "ws://backend:8080/ws"
    assert settings.platform == "telegram"
    assert settings.config.prefix == "!"
    assert settings.config.model_dump() == {"prefix": "!", "owner": "42"}
    assert settings.ping_interval == 10.0
    assert settings.retry_interval == 5.0
    assert settings.max_reply_depth == 8
    assert settings.data_path == "data"
    assert "log_level" not in settings.model_dump()


def test_prefix_defaults_to_slash(base_env, monkeypatch) -> None:
    monkeypatch.setenv("CONFIG", "{}")
    assert config.load_settings().config.prefix == "/"


@pytest.mark.parametrize("name", ["SERVER", "CONFIG"])
def test_required_variables(base_env, monkeypatch, name) -> None:
    monkeypatch.delenv(name)
    with pytest.raises(ConfigError, match=name):
        config.load_settings()


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"'])
def test_config_must_be_a_json_object(base_env, monkeypatch, raw) -> None:
    monkeypatch.setenv("CONFIG", raw)
    with pytest.raises(ConfigError):
        config.load_settings()


def test_non_positive_interval_is_rejected(base_env, monkeypatch) -> None:
    monkeypatch.setenv("PING_INTERVAL", "0")
    with pytest.raises(ConfigError):
        config.load_settings()


def test_platform_is_inferred_from_single_section(base_env, monkeypatch) -> None:
    monkeypatch.delenv("PLATFORM")
    settings = config.load_settings({"whatsapp": {"api_url": "http://evo"}})
    assert settings.platform == "whatsapp"


def test_platform_cannot_be_inferred_from_several_sections(base_env, monkeypatch) -> None:
    monkeypatch.delenv("PLATFORM")
    with pytest.raises(ConfigError, match="PLATFORM"):
        config.load_settings({"telegram": {}, "whatsapp": {}})


def test_driver_config_validation() -> None:
    file_config = {"telegram": {"bot_token": "123:abc"}}
    assert config.driver_config(file_config, "telegram", TelegramConfig).bot_token == "123:abc"

    with pytest.raises(ConfigError, match="telegram"):
        config.driver_config({"telegram": {"bot_token": "x", "typo": 1}}, "telegram", TelegramConfig)
    with pytest.raises(ConfigError):
        config.driver_config({}, "telegram", TelegramConfig)


def test_whatsapp_config_defaults_and_bool_coercion() -> None:
    cfg = config.driver_config(
        {"whatsapp": {"api_url": "http://evo:8080", "api_key": "k", "instance": "main", "mark_read": "no"}},
        "whatsapp",
        WhatsAppConfig,
    )
    assert cfg.webhook_port == 8081
    assert cfg.webhook_path == "/whatsapp/webhook"
    assert cfg.mark_read is False


def test_collect_sensitive_walks_nested_values() -> None:
    found = config.collect_sensitive({
        "telegram": {"bot_token": "123:abc"},
        "whatsapp": {"api_key": "evo-key", "instance": "main", "hooks": [{"secret": "s3"}]},
    })
    assert found == {"123:abc", "evo-key", "s3"}


@pytest.mark.parametrize("name,body", [
    ("config.json", '{"telegram": {"bot_token": "t"}}'),
    ("config.yaml", "telegram:\n  bot_token: t\n"),
    ("config.toml", '[telegram]\nbot_token = "t"\n'),
])
def test_config_file_formats(tmp_path, name, body) -> None:
    (tmp_path / name).write_text(body, encoding="utf-8")
    assert find_config(tmp_path) == tmp_path / name
    assert config.load_file_config(str(tmp_path)) == {"telegram": {"bot_token": "t"}}


def test_missing_and_empty_config_files(tmp_path) -> None:
    assert config.load_file_config(str(tmp_path)) == {}
    (tmp_path / "config.yaml").write_text("", encoding="utf-8")
    assert load_config(tmp_path / "config.yaml") == {}


def test_non_mapping_config_file_is_an_error(tmp_path) -> None:
    (tmp_path / "config.json").write_text("[1]", encoding="utf-8")
    with pytest.raises(ConfigError):
        config.load_file_config(str(tmp_path))


def test_malformed_yaml_is_a_config_error(tmp_path) -> None:
    (tmp_path / "config.yaml").write_text("telegram: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="config.yaml"):
        config.load_file_config(str(tmp_path))
