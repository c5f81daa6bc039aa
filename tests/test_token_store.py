"""
Tests for the token bridge.
Run with: pytest tests/
"""
import pytest

from m3w_offline.services.storage import StorageError
from m3w_offline.services.token_store import TokenStore


class TestTokenStore:
    async def test_read_before_any_write(self, token_store):
        assert await token_store.read_token() is None

    async def test_save_and_read(self, token_store):
        await token_store.save_token("abc")
        assert await token_store.read_token() == "abc"

    async def test_save_replaces_previous(self, token_store):
        await token_store.save_token("first")
        await token_store.save_token("second")
        assert await token_store.read_token() == "second"

    async def test_clear(self, token_store):
        await token_store.save_token("abc")
        await token_store.clear_token()
        assert await token_store.read_token() is None

    async def test_clear_without_token(self, token_store):
        await token_store.clear_token()
        assert await token_store.read_token() is None

    async def test_visible_to_second_instance(self, tmp_path):
        await TokenStore(tmp_path / "auth.db").save_token("shared")
        assert await TokenStore(tmp_path / "auth.db").read_token() == "shared"

    async def test_corrupt_store_reads_as_none(self, tmp_path):
        path = tmp_path / "auth.db"
        path.write_bytes(b"this is not a sqlite database" * 10)

        assert await TokenStore(path).read_token() is None

    async def test_save_to_unopenable_store_raises(self, tmp_path):
        path = tmp_path / "auth.db"
        path.mkdir()

        with pytest.raises(StorageError):
            await TokenStore(path).save_token("abc")
