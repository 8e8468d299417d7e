#!/usr/bin/env python3
"""Command-line entry point: ``python tonewatch.py --port 5050``."""

from app import main

if __name__ == '__main__':
    main()
