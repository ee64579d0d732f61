from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from esgagent.storage import BlobStore, local_url, normalize_key, service_url


class TestKeys:
    def test_normalize_key(self):
        assert normalize_key("\\companies//1/./../docs/a.pdf") == "companies/1/docs/a.pdf"

    def test_local_url_quotes_segments(self):
        assert local_url("companies/1/documents/123-my report.pdf") == "/uploads/companies/1/documents/123-my%20report.pdf"

    @pytest.mark.parametrize("base, expected", [
        ("https://forge.example", "https://forge.example/v1/storage/upload"),
        ("https://forge.example/", "https://forge.example/v1/storage/upload"),
        ("https://forge.example/api", "https://forge.example/api/v1/storage/upload"),
        ("https://forge.example/api/v2/", "https://forge.example/api/v2/storage/upload"),
    ])
    def test_service_url(self, base, expected):
        assert service_url(base, "/storage/upload") == expected


class TestBlobStore:
    @pytest.mark.asyncio
    async def test_local_write(self, storage):
        stored = await storage.put("companies/1/a.csv", "x,y\n")
        assert stored == {"key": "companies/1/a.csv", "url": "/uploads/companies/1/a.csv"}
        assert (storage.uploads_dir / "companies/1/a.csv").read_text() == "x,y\n"

    @pytest.mark.asyncio
    async def test_remote_url_returned(self, tmp_path):
        store = BlobStore(uploads_dir=tmp_path, api_url="https://forge.example", api_key="k")
        with patch.object(store, "_upload", AsyncMock(return_value="https://cdn.example/a.pdf")) as upload:
            stored = await store.put("a.pdf", b"%PDF", "application/pdf")
        assert stored == {"key": "a.pdf", "url": "https://cdn.example/a.pdf"}
        upload.assert_awaited_once_with("a.pdf", b"%PDF", "application/pdf")
        assert not (tmp_path / "a.pdf").exists()

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_to_disk(self, tmp_path):
        store = BlobStore(uploads_dir=tmp_path, api_url="https://forge.example", api_key="k")
        failure = httpx.ConnectError("refused")
        with patch.object(store, "_upload", AsyncMock(side_effect=failure)):
            stored = await store.put("b.pdf", b"%PDF")
        assert stored["url"] == "/uploads/b.pdf"
        assert (tmp_path / "b.pdf").read_bytes() == b"%PDF"

    @pytest.mark.asyncio
    async def test_remote_without_url_falls_back_to_disk(self, tmp_path):
        store = BlobStore(uploads_dir=tmp_path, api_url="https://forge.example", api_key="k")
        with patch.object(store, "_upload", AsyncMock(return_value=None)):
            stored = await store.put("c.csv", b"1")
        assert stored["url"] == "/uploads/c.csv"

    def test_remote_needs_url_and_key(self, tmp_path):
        assert not BlobStore(uploads_dir=tmp_path, api_url="https://forge.example", api_key="").remote_enabled
        assert BlobStore(uploads_dir=tmp_path, api_url="https://forge.example", api_key="k").remote_enabled
