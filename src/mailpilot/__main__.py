"""Entry point for running mailpilot as a module.

Usage:
    python -m mailpilot validate-config
    python -m mailpilot --help
"""

from mailpilot.cli import main

if __name__ == "__main__":
    main()
