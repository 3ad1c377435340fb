"""
Entry point for running canarypilot as a module.

Usage:
    python -m canarypilot demo --speed 0.2
    python -m canarypilot settings show

This is equivalent to:
    python -m canarypilot.cli.release_cli [args]
"""

import sys

from canarypilot.cli.release_cli import main

if __name__ == "__main__":
    sys.exit(main())
