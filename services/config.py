# services/config.py
#
# Process-wide configuration, loaded once at startup and read-only afterwards.
#
# Environment:
#   SERVER            – backend websocket URL (required)
#   CONFIG            – JSON object forwarded in the init envelope (required)
#   PLATFORM          – driver name ("telegram", "whatsapp"); optional when the
#                       config file holds exactly one driver section
#   BRIDGE_DATA_PATH  – directory holding config.{json,yaml,yml,toml} (default "data")
#   LOG_LEVEL         – console log level (default INFO)
#   PING_INTERVAL     – heartbeat period in seconds (default 30)
#   RETRY_INTERVAL    – wait between refused connection attempts (default 5)
#   MAX_REPLY_DEPTH   – quote-chain ceiling for inbound conversion (default 8)

import json
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError

import services.util as u
import services.logger as log
import services.config_io as config_io
from services.config_schema import BridgeConfig, Settings
from services.error import ConfigError

l = log.get_logger()

# Config keys whose values are credentials and must never be logged.
# Matched as substrings against lower-cased key names.
_SENSITIVE_KEY_PATTERNS = ("token", "secret", "password", "api_key", "apikey")


def collect_sensitive(obj, found: set[str] | None = None) -> set[str]:
    """Recursively extract credential values from a config mapping."""
    if found is None:
        found = set()
    if isinstance(obj, dict):
        for k, v in obj.items():
            if isinstance(v, str) and v and any(p in str(k).lower() for p in _SENSITIVE_KEY_PATTERNS):
                found.add(v)
            else:
                collect_sensitive(v, found)
    elif isinstance(obj, list):
        for item in obj:
            collect_sensitive(item, found)
    return found


def parse_bridge_config(raw: str | None) -> BridgeConfig:
    if not raw:
        raise ConfigError("CONFIG is not set")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"CONFIG is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("CONFIG must be a JSON object")
    try:
        return BridgeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"CONFIG is invalid:\n{e}") from e


def load_file_config(data_path: str) -> dict:
    """Read the driver config file from *data_path*; empty when there is none."""
    path = config_io.find_config(Path(data_path))
    if path is None:
        l.debug(f"No config file in {data_path}")
        return {}
    l.info(f"Loading config from: {path}")
    try:
        return config_io.load_config(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e


def load_settings(file_config: dict | None = None) -> Settings:
    """Build the process settings from the environment.

    *file_config* is the parsed driver config file, used to infer the
    platform when PLATFORM is not set.
    """
    server = u.get_env("SERVER")
    if not server:
        raise ConfigError("SERVER is not set")

    platform = u.get_env("PLATFORM")
    if not platform:
        sections = [k for k, v in (file_config or {}).items() if isinstance(v, dict)]
        if len(sections) != 1:
            raise ConfigError("PLATFORM is not set and cannot be inferred from the config file")
        platform = sections[0]

    try:
        return Settings(
            server=server,
            platform=platform.strip().lower(),
            config=parse_bridge_config(u.get_env("CONFIG")),
            data_path=u.get_data_path(),
            ping_interval=u.get_env_float("PING_INTERVAL", 30.0),
            retry_interval=u.get_env_float("RETRY_INTERVAL", 5.0),
            max_reply_depth=int(u.get_env_float("MAX_REPLY_DEPTH", 8)),
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid settings:\n{e}") from e


def driver_config(file_config: dict, platform: str, config_cls: type[BaseModel]) -> BaseModel:
    """Validate the *platform* section of the config file with *config_cls*."""
    try:
        return config_cls.model_validate(file_config.get(platform) or {})
    except ValidationError as e:
        raise ConfigError(f"Config error in {platform}:\n{e}") from e
