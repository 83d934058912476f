"""CLI entry point for manyfutures.cli module.

Enables execution via: python -m manyfutures.cli
"""

from manyfutures.cli.reconcile_spend import main

if __name__ == "__main__":
    raise SystemExit(main())
