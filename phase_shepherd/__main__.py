"""
Entry point for running phase_shepherd as a module.

Allows running as: python -m phase_shepherd
"""

from phase_shepherd.cli import app

if __name__ == "__main__":
    app()
