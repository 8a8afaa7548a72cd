"""
Storage Module - Persistent Session Storage

Uses SQLite for upload sessions and their received chunk sets.
"""

from .database import Database, ReceiptResult, init_database

__all__ = ['Database', 'ReceiptResult', 'init_database']
