"""Command line interface."""

from __future__ import annotations

from bitswarm.cli.main import cli, main

__all__ = ["cli", "main"]
