"""
CLI runner module.

Provides commands:
- process-recurring: Generate due recurring occurrences
- classify: Label transactions from a JSON file
- match: Link a transaction to a recurring template
- archetypes: Mine spending events
- status: Store statistics
- init-config: Write a default config file
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
