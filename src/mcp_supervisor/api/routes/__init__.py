"""
Routes API par domaine.
"""

from . import servers
from . import health

__all__ = [
    "servers",
    "health",
]
