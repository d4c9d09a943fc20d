"""
Interface layer package.

Contains the command-line interface and its rich output formatters.
"""

from autodbpatch.interface.cli import main

__all__ = ["main"]
