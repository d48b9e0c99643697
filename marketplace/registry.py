"""
registry.py - In-memory Asset Registry

Reference implementation of the AssetRegistry protocol. Holds one title per
(collection_ref, token_ref) and moves it only when the source is the current
holder. Real deployments plug in their own registry; tests and the demo use
this one.
"""

from __future__ import annotations
import threading
from typing import Dict, List, Optional

from .core import AssetKey


class InMemoryAssetRegistry:
    """
    Title store keyed by (collection_ref, token_ref).

    Example:
        registry = InMemoryAssetRegistry()
        registry.mint("punks", "7", "alice")
        registry.owner_of("punks", "7")                 # "alice"
        registry.transfer("alice", "bob", "punks", "7")   # True
    """

    def __init__(self):
        self._owners: Dict[AssetKey, str] = {}
        self._lock = threading.Lock()

    def mint(self, collection_ref: str, token_ref: str, owner: str) -> AssetKey:
        """
        Create a new title held by owner.

        Raises:
            ValueError: If the asset already exists or owner is empty
        """
        if not owner or not owner.strip():
            raise ValueError("owner cannot be empty")
        key = (collection_ref, token_ref)
        with self._lock:
            if key in self._owners:
                raise ValueError(f"Asset {collection_ref}/{token_ref} already minted")
            self._owners[key] = owner
        return key

    def owner_of(self, collection_ref: str, token_ref: str) -> Optional[str]:
        with self._lock:
            return self._owners.get((collection_ref, token_ref))

    def transfer(self, source: str, dest: str, collection_ref: str, token_ref: str) -> bool:
        """Move the title. Refused (False) if source is not the holder or dest is empty."""
        key = (collection_ref, token_ref)
        with self._lock:
            if self._owners.get(key) != source or not dest:
                return False
            self._owners[key] = dest
            return True

    def assets_of(self, owner: str) -> List[AssetKey]:
        """All assets held by owner, sorted."""
        with self._lock:
            return sorted(k for k, v in self._owners.items() if v == owner)
