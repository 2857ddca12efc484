"""
PerpVault governance

Provides:
  - Role / AccessControl    (access.py)
"""

from .access import AccessControl, Role

__all__ = [
    "AccessControl",
    "Role",
]
