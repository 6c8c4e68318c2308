"""Startup error types."""

from __future__ import annotations


class ConfigError(ValueError):
    """Configuration that cannot work (bad address, port, timeout...)."""


class BindError(ConfigError):
    """The wake multicast socket could not be set up."""
