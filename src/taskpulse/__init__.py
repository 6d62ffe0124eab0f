# src/taskpulse/__init__.py

"""Heartbeat-driven task orchestration core."""

__version__ = "0.1.0"
