from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


# ---------------------------------------------------------------------------
# Reusable bool coercion: "true" / "1" / "yes" → True
# ---------------------------------------------------------------------------

def _coerce_bool(v: object) -> object:
    if isinstance(v, str):
        return v.lower() in ("true", "1", "yes")
    return v


CoercedBool = Annotated[bool, BeforeValidator(_coerce_bool)]


# ---------------------------------------------------------------------------
# Base for all driver config blocks — unknown keys are a validation error
# ---------------------------------------------------------------------------

class _DriverConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Process-wide settings
# ---------------------------------------------------------------------------

class BridgeConfig(BaseModel):
    """The CONFIG blob shared with the backend in the init envelope.

    Only ``prefix`` is interpreted locally; every other key is kept and
    forwarded verbatim.
    """
    model_config = ConfigDict(extra="allow", frozen=True)

    prefix: str = "/"


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    server:          str
    platform:        str
    config:          BridgeConfig
    data_path:       str   = "data"
    ping_interval:   float = Field(default=30.0, gt=0)
    retry_interval:  float = Field(default=5.0, gt=0)
    max_reply_depth: int   = Field(default=8, ge=0)
