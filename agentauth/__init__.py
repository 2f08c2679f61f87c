# agentauth/__init__.py
"""Localhost reverse proxy that injects upstream credentials for agents."""

__version__ = "1.0.0"
