"""
pomelobot CLI package.

Runs robot scripts once, replicates them as concurrent robots, or opens an
interactive request shell.  Use ``python -m pomelobot_cli``,
``python/pomelo_robot.py`` or the ``pomelobot`` console script.
"""

from __future__ import annotations

from .cli import main

__all__ = ["main"]
__version__ = "0.1.0"
