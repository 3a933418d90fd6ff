"""Deployment strategies, one per mode."""
