"""
Planning utilities for the implementation loop.

This module provides:
- DependencyGraph: cycle and dangling-dependency diagnostics over task ids
"""

from issues_loop.planning.dependency_graph import DependencyGraph

__all__ = ["DependencyGraph"]
