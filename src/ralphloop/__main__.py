"""Main entry point for running ralphloop as a module.

Usage:
    python -m ralphloop --help
    python -m ralphloop run --max-iterations 10
    python -m ralphloop serve --ledger prd.json
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
