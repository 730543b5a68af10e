"""Mailforge - templated e-mail build orchestrator."""

from mailforge._version import __version__
from mailforge.config import BuildSettings, load_settings
from mailforge.orchestrator import PIPELINES, Orchestrator

__all__ = ["__version__", "BuildSettings", "Orchestrator", "PIPELINES", "load_settings"]
