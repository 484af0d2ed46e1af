"""
Subagent Orchestrator: registers worker agents, dispatches tasks and
workflows to them, relays their messages and tracks their performance.
"""

__version__ = "0.1.0"

from .orchestration.orchestrator import SubagentOrchestrator

__all__ = ["SubagentOrchestrator", "__version__"]
