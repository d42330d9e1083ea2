"""
Error taxonomy for load runs.

Only configuration and infrastructure problems are raised as exceptions.
Everything that goes wrong *during* a run (transport failures, threshold
breaches, empty sample sets) is captured as data and surfaces in the
report instead.
"""

from __future__ import annotations


class LoadstageError(Exception):
    """Base class for errors that stop a run before or after it executes."""


class ConfigurationError(LoadstageError, ValueError):
    """
    The run plan is malformed.

    Raised before any request is issued: bad stage list, non-positive
    duration, empty endpoint set, unknown threshold metric, and so on.
    """


class PreflightError(LoadstageError):
    """The target did not pass the health check issued before the run."""


class ReportWriteError(LoadstageError):
    """The report artifact could not be written to disk."""


class RunError(LoadstageError):
    """The engine itself failed while driving load (e.g. a thread could not start)."""
