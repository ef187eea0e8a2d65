"""
CLI Module - Command-line interface for docvector.
==================================================

Usage:
    docvector --help
    docvector repo-create docs --model all-minilm-l12-v2
    docvector ingest docs README.md --meta kind=readme
    docvector search docs "how do I configure qdrant" -k 5
    docvector reconcile

Components:
- main: Typer CLI application
"""

from docvector.cli.main import app, cli

__all__ = ["app", "cli"]
