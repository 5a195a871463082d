"""
Entry point for running the relayer as a module.

Usage:
    python -m truth_relayer
"""

from truth_relayer.cli import main

if __name__ == "__main__":
    main()
