#!/usr/bin/env python3
"""
Entry point for stopguard.
Wraps stopguard/cli.py so it runs from a source checkout.
"""
import os
import sys

# Ensure project root is in python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from stopguard.config.dotenv_loader import load_dotenv_files

# Explicit dotenv loading for local/dev. In prod this is a no-op.
load_dotenv_files()

from stopguard.cli import app

if __name__ == "__main__":
    app()
