# services/util.py

import os


def get_data_path() -> str:
    path = get_env("BRIDGE_DATA_PATH")
    return path.strip() if path else "data"


def get_env(env: str, default: str | None = None) -> str | None:
    value = os.environ.get(env)
    if value is None or not value.strip():
        return default
    return value


def get_env_float(env: str, default: float) -> float:
    raw = get_env(env)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
