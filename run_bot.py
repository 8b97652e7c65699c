#!/usr/bin/env python
"""
Run script for the tax token reward bot.

This script sets up logging directories and runs the bot.
"""

import sys
from pathlib import Path

# Create logs directory if it doesn't exist
logs_dir = Path("logs")
logs_dir.mkdir(exist_ok=True)

from taxbot.main import main

if __name__ == "__main__":
    sys.exit(main())
