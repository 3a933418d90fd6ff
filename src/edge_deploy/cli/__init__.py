"""Command line interface for edge-deploy."""
