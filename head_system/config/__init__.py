"""
Configuration package for settings and branch geometry.
"""

from .settings import Settings

__all__ = ['Settings']
