"""
Persistence package exposing the key-value store backing bundle metadata.
"""

from .kvstore import KeySpace, KVStore

__all__ = ["KVStore", "KeySpace"]
