from contextlib import contextmanager
import asyncio
import sys
import traceback

import services.logger as log

l = log.get_logger()


class BridgeError(Exception):
    """Base class for errors raised by the bridge itself."""


class ConfigError(BridgeError):
    """Missing or invalid environment / config file values."""


class PayloadError(BridgeError):
    """A backend frame that is not JSON or does not have the expected shape."""


class TransportError(BridgeError):
    """The backend websocket could not be used."""


def _handle_uncaught_exceptions(exc_type, exc_value, exc_traceback):
    """Global exception handler for uncaught exceptions."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    l.critical(
        "Unhandled exception caught:\n"
        + ''.join(traceback.format_exception(exc_type, exc_value, exc_traceback))
    )


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict):
    """Log failures of fire-and-forget tasks (one platform event) without stopping the loop."""
    exc = context.get("exception")
    message = context.get("message", "")
    if exc is not None:
        l.error(
            f"Unhandled error in event handler: {message}\n"
            + ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        )
    else:
        l.error(f"Unhandled event loop error: {message}")


def install_hooks(loop: asyncio.AbstractEventLoop | None = None):
    """Install the process-wide excepthook and, if given, the loop exception handler."""
    sys.excepthook = _handle_uncaught_exceptions
    if loop is not None:
        loop.set_exception_handler(_handle_loop_exception)


def raise_and_log(message: str, exception_type: type = BridgeError):
    """
    Log an error and then raise the specified exception.

    :param message: Error message to log and include in the exception.
    :param exception_type: Type of exception to raise (default: BridgeError).
    """
    l.error(f"Raising exception: {message}")
    raise exception_type(message)


@contextmanager
def catch_and_log(context_info: str = ""):
    """
    Log any exception raised inside the block together with *context_info*,
    then let it propagate to the caller.
    """
    try:
        yield
    except Exception as e:
        l.error(f"Exception caught in context '{context_info}': {e}")
        raise
