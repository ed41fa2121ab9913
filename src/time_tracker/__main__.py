#!/usr/bin/env python3
"""
Main entry point for the time tracker sync module.
This allows running the module with: python -m time_tracker
"""

from .sync import main

if __name__ == "__main__":
    main()
