"""Resumable orchestrator for multi-step AI-assisted development workflows."""

__version__ = "0.1.0"
