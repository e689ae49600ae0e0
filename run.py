#!/usr/bin/env python3
"""Launch the termrelay console.

Usage:
    python run.py [config.yaml] [--debug] [--trace] [--verbose]
"""
import asyncio

from termrelay.main import main

if __name__ == "__main__":
    asyncio.run(main())
