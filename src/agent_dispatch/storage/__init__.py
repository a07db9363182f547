"""Durable storage for orchestrator state."""
