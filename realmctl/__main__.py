#!/usr/bin/env python3
"""
Main entry point for the realmctl CLI when run as a module.
"""

from realmctl.cli import main

if __name__ == "__main__":
    main()
