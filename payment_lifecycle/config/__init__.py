"""Configuration package for the payment lifecycle service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
