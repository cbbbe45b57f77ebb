"""Run a command with decrypted secrets in its environment."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def build_env(secrets: Mapping[str, str], base: Mapping[str, str] | None = None) -> dict[str, str]:
    """The child's environment: ``base`` (default os.environ) overlaid with secrets."""
    env = dict(os.environ if base is None else base)
    env.update(secrets)
    return env


def run_with_secrets(command: Sequence[str], secrets: Mapping[str, str]) -> int:
    """Run ``command`` to completion and return its exit code.

    stdio is inherited. SIGINT and SIGTERM received meanwhile are passed to
    the child. A child killed by a signal yields 128 + signal number.
    """
    if not command:
        raise ValueError("no command specified")

    proc = subprocess.Popen(list(command), env=build_env(secrets))
    logger.debug("Started %s (pid %d) with %d secrets", command[0], proc.pid, len(secrets))

    def forward(signum, frame):
        proc.send_signal(signum)

    previous = {sig: signal.signal(sig, forward) for sig in FORWARDED_SIGNALS}
    try:
        returncode = proc.wait()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if returncode < 0:
        return 128 - returncode
    return returncode
