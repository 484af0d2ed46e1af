"""
Data models and error types for the Subagent Orchestrator.
"""
