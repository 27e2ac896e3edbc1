"""
Entry point for running the relayer as a module.

Usage:
    python -m payroll_relayer
"""

from payroll_relayer.cli import main

if __name__ == "__main__":
    main()
