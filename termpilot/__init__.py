"""Termpilot - terminal agent loop with MCP tool providers."""

__version__ = "0.1.0"

from termpilot.config import Config

__all__ = ["Config", "__version__"]
