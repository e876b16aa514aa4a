"""Multi-channel inbox automation: webhook intake, rules, dispatch and escalation."""

from .__version__ import __version__

__all__ = ["__version__"]
