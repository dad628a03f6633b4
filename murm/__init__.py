"""Murmuration: parallel feature pipelines in isolated git worktrees."""

__version__ = "0.1.0"
