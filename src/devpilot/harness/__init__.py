"""Harness orchestration engine: runner, providers, detection, recovery, persistence."""
