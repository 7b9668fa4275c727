"""Command line entry point for lai-runtime."""

from .app import main
from .parser import parse_arguments

__all__ = ["main", "parse_arguments"]
