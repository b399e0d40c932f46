"""Vibey - an autonomous coding agent driven by a local LLM."""

__version__ = "0.1.0"

from vibey.config import Config

__all__ = ["Config", "__version__"]
