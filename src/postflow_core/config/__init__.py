"""Configuration modules for postflow services."""

from .settings import Settings, settings

__all__ = ["Settings", "settings"]
