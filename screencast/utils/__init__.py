"""Utility helpers for screencast."""

from .logging import configure_logging

__all__ = ["configure_logging"]
