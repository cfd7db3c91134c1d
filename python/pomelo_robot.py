#!/usr/bin/env python3
"""Entry point for the pomelobot CLI."""

from __future__ import annotations

from pomelobot_cli import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
