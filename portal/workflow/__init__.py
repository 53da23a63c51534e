"""Workflow domain primitives: phase catalog, actors and outbound events."""
