"""Shared utility modules for Usage Limiter."""

from .logging import setup_logging

__all__ = ["setup_logging"]
