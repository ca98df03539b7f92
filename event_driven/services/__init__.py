"""Producing-service simulators. They only publish events."""
