"""Sentry integration for error tracking and performance monitoring.

Sentry is initialized early in main() after logging setup. Without
SHOWEL_SENTRY_DSN in the environment the SDK stays disabled.
"""

import os

import sentry_sdk

from showel.__about__ import __version__

_DSN_ENV_VAR = "SHOWEL_SENTRY_DSN"


def setup_sentry(environment: str = "local") -> None:
    """Initialize Sentry from the environment-provided DSN."""
    sentry_sdk.init(
        dsn=os.environ.get(_DSN_ENV_VAR),
        traces_sample_rate=0.03,
        environment=environment,
        release=__version__,
        attach_stacktrace=True,
        send_default_pii=False,
    )
