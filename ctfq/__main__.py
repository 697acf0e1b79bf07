"""
CTFQ CLI Entry Point

This module allows running CTFQ as:
    python -m ctfq [command] [options]
"""

from ctfq.cli import cli

if __name__ == "__main__":
    cli()
