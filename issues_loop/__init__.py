"""
Issues Loop - task graph state engine for an autonomous implementation loop.

Executes a queue of small tasks one at a time, recording progress, decisions
and transient hints on a GitHub issue's comment thread so a restarted loop
can reconcile what actually happened.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
