"""
Driver registry.

Each driver module registers itself at import time with the ``@register``
class decorator.  ``main.py`` auto-discovers every module in ``drivers/`` via
``pkgutil.iter_modules`` so dropping a file in is enough to make it available
as a ``PLATFORM`` value.
"""

from __future__ import annotations

from typing import NamedTuple


class DriverEntry(NamedTuple):
    config_cls: type
    driver_cls: type


_REGISTRY: dict[str, DriverEntry] = {}


def register(name: str, config_cls: type):
    """Class decorator registering a ``BaseDriver`` subclass under *name*.

    Args:
        name:       Platform key used for ``PLATFORM`` and the config file
                    section (e.g. ``"telegram"``).
        config_cls: Pydantic model validating that section.
    """
    def decorator(driver_cls: type) -> type:
        _REGISTRY[name] = DriverEntry(config_cls, driver_cls)
        return driver_cls
    return decorator


def get_driver(name: str) -> DriverEntry:
    """Return the entry for *name*; ``KeyError`` lists what is available."""
    try:
        return _REGISTRY[name]
    except KeyError:
        raise KeyError(f"unknown platform {name!r}; available: {', '.join(sorted(_REGISTRY)) or 'none'}") from None
