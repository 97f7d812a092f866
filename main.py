import argparse
import asyncio
import importlib
import os
import pkgutil
import signal
import sys

import services.config as config
import services.error as error
import services.logger as log
import services.media as media
import services.util as u
from services.bridge import Bridge
from services.db import MessageStore
from services.error import ConfigError, TransportError

import drivers as _drivers_pkg

l = log.get_logger()


def _load_all_drivers() -> None:
    """Import every module in the ``drivers/`` package.

    Each driver module registers itself at import time, so this one pass is
    enough to populate the registry.  The ``registry`` module itself is
    skipped to avoid a circular bootstrap.
    """
    for _, mod_name, _ in pkgutil.iter_modules(_drivers_pkg.__path__):
        if mod_name != "registry":
            importlib.import_module(f"drivers.{mod_name}")


def build_bridge() -> Bridge:
    """Load configuration and construct the bridge; raises ``ConfigError``."""
    _load_all_drivers()
    from drivers.registry import get_driver

    file_config = config.load_file_config(u.get_data_path())
    log.register_sensitive(config.collect_sensitive(file_config))

    settings = config.load_settings(file_config)
    l.debug(f"SERVER: {settings.server}")
    l.debug(f"CONFIG: {settings.config.model_dump()}")

    try:
        entry = get_driver(settings.platform)
    except KeyError as e:
        raise ConfigError(str(e.args[0])) from None
    driver_config = config.driver_config(file_config, settings.platform, entry.config_cls)

    store = MessageStore(os.path.join(settings.data_path, "messages.db"))
    return Bridge(settings, entry.driver_cls, driver_config, store=store)


async def main() -> int:
    try:
        bridge = build_bridge()
    except ConfigError as e:
        l.critical(str(e))
        return 1

    loop = asyncio.get_running_loop()
    error.install_hooks(loop)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bridge.close, f"received {sig.name}")
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt still reaches asyncio.run

    l.info(f"Polaris bridge starting ({bridge.platform})…")
    code = 0
    try:
        await bridge.run()
    except TransportError:
        code = 1
    except asyncio.CancelledError:
        await bridge.shutdown("cancelled")
    finally:
        await media.close_session()
        if bridge.store is not None:
            bridge.store.close()
    l.warning("Exit process")
    return code


def cli() -> None:
    parser = argparse.ArgumentParser(prog="polaris-bridge", description="Chat platform ↔ backend websocket bridge")
    parser.add_argument("--platform", help="driver to run (overrides PLATFORM)")
    parser.add_argument("--log-dir", default=log.LOG_DIR, help="directory for log files ('' disables file logging)")
    args = parser.parse_args()

    if args.platform:
        os.environ["PLATFORM"] = args.platform

    log.setup_logging(u.get_env("LOG_LEVEL", "INFO"), args.log_dir or None)
    error.install_hooks()

    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
