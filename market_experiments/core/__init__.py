"""Core module containing configuration and shared utilities."""

from market_experiments.core.config import Settings, get_settings

__all__ = ["Settings", "get_settings"]
