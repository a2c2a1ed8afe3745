"""Broker detection for the pipeline's Dramatiq actors.

Actors call :func:`ensure_broker_configured` when they run rather than at
import time, so importing the actor module never mutates global broker state.
"""

from __future__ import annotations

import os
import sys
import threading

import dramatiq
from dramatiq.brokers.stub import StubBroker

_BROKER_LOCK = threading.Lock()
_broker_configured = False

_TEST_ENV_VARS = ("PYTEST_CURRENT_TEST", "PYTEST_XDIST_WORKER", "PYTEST_ADDOPTS")
_TRUTHY = frozenset({"1", "true", "yes"})


def _is_running_tests() -> bool:
    """Return True when the process runs under pytest."""
    return "pytest" in sys.modules or any(key in os.environ for key in _TEST_ENV_VARS)


def _should_use_stub_broker() -> bool:
    """Return True when ``CAIRN_ALLOW_STUB_BROKER`` is truthy or under pytest."""
    allow_stub = os.environ.get("CAIRN_ALLOW_STUB_BROKER", "")
    return allow_stub.strip().lower() in _TRUTHY or _is_running_tests()


def ensure_broker_configured() -> None:
    """Make sure a Dramatiq broker exists before an actor body runs.

    Idempotent and thread-safe. Installs a :class:`StubBroker` for local and
    test runs when no broker has been configured.

    Raises
    ------
    RuntimeError
        If no broker is configured and a stub broker is not allowed.

    """
    global _broker_configured

    if _broker_configured:
        return

    with _BROKER_LOCK:
        if _broker_configured:
            return

        try:  # pragma: no cover - exercised in tests and CLI usage
            current_broker = dramatiq.get_broker()
        except (ImportError, LookupError):
            # No broker backend installed or none configured yet.
            current_broker = None

        if current_broker is None:
            if not _should_use_stub_broker():  # pragma: no cover
                message = (
                    "No Dramatiq broker configured. Set CAIRN_ALLOW_STUB_BROKER=1 "
                    "for local/test runs or configure a real broker."
                )
                raise RuntimeError(message)
            dramatiq.set_broker(StubBroker())

        _broker_configured = True
