"""
Services package for the DaPaint match engine.

Cross-cutting read paths and shared service infrastructure.
"""

from .base import BaseService

__all__ = ['BaseService']
