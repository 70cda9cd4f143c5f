#!/usr/bin/env python3
"""
WimForge - Windows installation media customization tool
Main application entry point
"""

import sys
from pathlib import Path

# Add src directory to Python path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from wimforge.cli.cli_interface import cli


def main():
    """Main application entry point"""
    cli()


if __name__ == "__main__":
    main()
