"""Reelwatch: submit, poll and cancel long-running video generation jobs."""

__version__ = "0.1.0"
