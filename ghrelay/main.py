#!/usr/bin/env python3
"""
Main entry point for the Typer-based ghrelay CLI.

This delegates to the UI layer in ghrelay.ui.cli to keep the
console script mapping stable.
"""

from ghrelay.ui.cli import run as ghrelay


if __name__ == "__main__":
    ghrelay()
