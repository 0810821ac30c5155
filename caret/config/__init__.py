# caret/config/__init__.py
"""Configuration package for caret."""

from .settings import settings, Settings

__all__ = ["settings", "Settings"]
