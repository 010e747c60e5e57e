"""
Environments for the walkers.

- arena: bounded 2D rectangle, no wrapping
"""

from .arena import Arena

__all__ = ["Arena"]
