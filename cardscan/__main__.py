#!/usr/bin/env python3
"""Main entry point for cardscan package."""

import sys
from cardscan.cli import main

if __name__ == "__main__":
    sys.exit(main())
