"""Execution engine: models, executors, tracker and health monitoring."""
