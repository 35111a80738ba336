"""Workflow job orchestrator for remote tool pipelines."""

__version__ = "0.1.0"
