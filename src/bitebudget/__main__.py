"""Punto de entrada ``python -m bitebudget``."""

from __future__ import annotations

from bitebudget.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
