"""Phased deployment orchestration for edge workers."""

__version__ = "0.1.0"
