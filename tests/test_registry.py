"""
test_registry.py - Unit tests for registry.py
"""

import pytest

from marketplace import InMemoryAssetRegistry, AssetRegistry


class TestInMemoryAssetRegistry:

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryAssetRegistry(), AssetRegistry)

    def test_mint_and_owner_of(self):
        reg = InMemoryAssetRegistry()
        assert reg.mint("punks", "1", "alice") == ("punks", "1")
        assert reg.owner_of("punks", "1") == "alice"

    def test_unknown_asset_has_no_owner(self):
        assert InMemoryAssetRegistry().owner_of("punks", "404") is None

    def test_double_mint_raises(self):
        reg = InMemoryAssetRegistry()
        reg.mint("punks", "1", "alice")
        with pytest.raises(ValueError, match="already minted"):
            reg.mint("punks", "1", "bob")

    def test_mint_requires_owner(self):
        with pytest.raises(ValueError, match="owner"):
            InMemoryAssetRegistry().mint("punks", "1", "")

    def test_transfer_by_holder(self):
        reg = InMemoryAssetRegistry()
        reg.mint("punks", "1", "alice")
        assert reg.transfer("alice", "bob", "punks", "1") is True
        assert reg.owner_of("punks", "1") == "bob"

    def test_transfer_by_non_holder_refused(self):
        reg = InMemoryAssetRegistry()
        reg.mint("punks", "1", "alice")
        assert reg.transfer("bob", "carol", "punks", "1") is False
        assert reg.owner_of("punks", "1") == "alice"

    def test_transfer_unknown_asset_refused(self):
        assert InMemoryAssetRegistry().transfer("alice", "bob", "punks", "1") is False

    def test_assets_of(self):
        reg = InMemoryAssetRegistry()
        reg.mint("punks", "2", "alice")
        reg.mint("apes", "1", "alice")
        reg.mint("punks", "1", "bob")
        assert reg.assets_of("alice") == [("apes", "1"), ("punks", "2")]
