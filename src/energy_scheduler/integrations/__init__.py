"""Adapters for the price source and device control collaborators."""

from __future__ import annotations

from .utils import configure_logging, logger

__all__ = ["configure_logging", "logger"]
