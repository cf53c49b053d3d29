"""structlog setup for showel.

Everything goes to stderr; stdout carries result data only. Lines
emitted on the database worker thread are tagged with the thread name
and, while a command is being handled, with the command's type.
"""

import logging
import sys
import threading
from contextlib import AbstractContextManager
from typing import Any

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class _CurrentStderr:
    """Logger factory that looks sys.stderr up per logger.

    The CLI test runner swaps stderr between invocations, so a handle
    captured at configure() time goes stale.
    """

    def __call__(self, *args: Any, **kwargs: Any) -> structlog.PrintLogger:
        return structlog.PrintLogger(file=sys.stderr)


def _add_thread(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    thread = threading.current_thread()
    if thread is not threading.main_thread():
        event_dict.setdefault("thread", thread.name)
    return event_dict


def setup_logging(verbose: bool = False) -> None:
    """Configure structlog. DEBUG when verbose, INFO otherwise."""
    level = _LEVELS["debug" if verbose else "info"]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_thread,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_CurrentStderr(),
        cache_logger_on_first_use=False,
    )


def command_context(command: object) -> AbstractContextManager[Any]:
    """Bind command=<type name> to every log line inside the block.

    Context variables are per asyncio task, so concurrent handlers on
    the worker loop do not see each other's binding.
    """
    return structlog.contextvars.bound_contextvars(command=type(command).__name__)
