"""
Session Module - Server-side Upload State Machine
"""

from .engine import SessionEngine

__all__ = ['SessionEngine']
