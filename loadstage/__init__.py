"""
loadstage: staged load generation and performance assessment.

Drives a ramp/hold/spike virtual-user profile against an HTTP API,
aggregates latency and error metrics, gates the run on threshold rules
and writes one JSON report per run.

Typical use goes through the CLI (``python -m loadstage run plan.yml``)
or, programmatically, through :func:`create_runner`.
"""

from __future__ import annotations

import logging

from loadstage.config import get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

__version__ = "0.1.0"


def create_runner(plan, env: str | None = None, **overrides):
    """
    Create a :class:`~loadstage.runner.LoadRunner` for a run plan.

    Args:
        plan: A :class:`~loadstage.plan.RunConfig`.
        env: Configuration environment name.  If None, uses the
             LOADSTAGE_ENV environment variable.
        **overrides: Keyword overrides forwarded to the runner
            (e.g. ``results_dir``).

    Returns:
        A runner ready to ``run()`` the plan once.
    """
    from loadstage.runner import LoadRunner

    settings = get_config(env)
    logger.info("Creating runner with config: %s", settings.__name__)
    return LoadRunner(plan, settings=settings, **overrides)
