#!/usr/bin/env python3
"""
Entry point for running hooklistener as a module.

This allows the package to be executed with:
    python -m hooklistener
"""
from hooklistener.cli import cli

if __name__ == "__main__":
    cli()
