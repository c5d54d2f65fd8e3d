"""
Entry point for running codecontext as a module.

Usage:
    python -m codecontext stats
    python -m codecontext recall "why does the auth token expire?"

This is equivalent to:
    codecontext-memory [args]
"""

from codecontext.cli.memory_cli import main


if __name__ == "__main__":
    main()
