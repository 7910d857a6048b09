"""Autonomous goal / work item orchestration engine."""

__version__ = "0.1.0"
