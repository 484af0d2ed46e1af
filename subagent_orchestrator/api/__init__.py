"""
Subagent Orchestrator API module.

This module provides the REST and WebSocket surface of the orchestrator.
"""

from .main import create_app

__all__ = ["create_app"]
