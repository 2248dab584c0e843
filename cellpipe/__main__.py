#!/usr/bin/env python3
"""
cellpipe - single-cell clustering pipeline

Entry point for running as a module: python -m cellpipe
"""

from cellpipe.cli import app

if __name__ == "__main__":
    app()
