"""Tests for the content store backends (local directory + HTTP via httpx.MockTransport)."""

import httpx
import pytest

from services.errors import AppError, ErrorKind
from services.storage.content import HttpContentStore, LocalContentStore
from fakes import SAMPLE_FILENAME, SAMPLE_TRANSCRIPT, RecordingSleep


# ── Local directory ──

class TestLocalContentStore:
    @pytest.fixture
    def store(self, tmp_path):
        (tmp_path / SAMPLE_FILENAME).write_text(SAMPLE_TRANSCRIPT, encoding="utf-8")
        (tmp_path / "2025-01-05_Internal-1.txt").write_text("no customers here", encoding="utf-8")
        (tmp_path / "notes.md").write_text("jane@example.com", encoding="utf-8")
        return LocalContentStore(tmp_path)

    @pytest.mark.asyncio
    async def test_lists_only_txt_files(self, store):
        names = {f.name for f in await store.list_transcript_files()}
        assert names == {SAMPLE_FILENAME, "2025-01-05_Internal-1.txt"}

    @pytest.mark.asyncio
    async def test_email_filter_is_case_insensitive(self, store):
        files = await store.list_transcript_files("JANE@example.com")
        assert [f.id for f in files] == [SAMPLE_FILENAME]
        assert files[0].modified_time
        assert files[0].size > 0

    @pytest.mark.asyncio
    async def test_read_content(self, store):
        assert await store.read_content(SAMPLE_FILENAME) == SAMPLE_TRANSCRIPT

    @pytest.mark.asyncio
    async def test_read_missing_file(self, store):
        with pytest.raises(AppError) as exc_info:
            await store.read_content("missing.txt")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_rejects_paths_outside_root(self, store):
        with pytest.raises(AppError) as exc_info:
            await store.read_content("../etc/passwd")
        assert exc_info.value.kind == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        with pytest.raises(AppError) as exc_info:
            await LocalContentStore(tmp_path / "nope").list_transcript_files()
        assert exc_info.value.kind == ErrorKind.EXTERNAL_SERVICE


# ── HTTP ──

def http_store(handler, sleep=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpContentStore("https://files.test/api/", api_key="k", client=client, sleep=sleep or RecordingSleep())


class TestHttpContentStore:
    @pytest.mark.asyncio
    async def test_lists_across_pages(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer k"
            assert request.url.params["q"] == "jane@example.com"
            if request.url.params.get("page_token") == "p2":
                return httpx.Response(200, json={"files": [{"id": "f2", "name": "b.txt"}]})
            return httpx.Response(200, json={
                "files": [{"id": "f1", "name": "a.txt", "modified_time": "2025-01-02T00:00:00Z"}, {"id": "", "name": "x"}],
                "next_page_token": "p2",
            })

        files = await http_store(handler).list_transcript_files("jane@example.com")

        assert [f.id for f in files] == ["f1", "f2"]
        assert files[0].modified_time == "2025-01-02T00:00:00Z"

    @pytest.mark.asyncio
    async def test_read_retries_on_503(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(503)
            assert request.url.path == "/api/files/f1/content"
            return httpx.Response(200, text=SAMPLE_TRANSCRIPT)

        sleep = RecordingSleep()
        assert await http_store(handler, sleep).read_content("f1") == SAMPLE_TRANSCRIPT
        assert calls["n"] == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_read_404_is_not_found(self):
        store = http_store(lambda request: httpx.Response(404))
        with pytest.raises(AppError) as exc_info:
            await store.read_content("gone")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_read_403_is_fatal_external_error(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(403)

        with pytest.raises(AppError) as exc_info:
            await http_store(handler).read_content("f1")
        assert exc_info.value.kind == ErrorKind.EXTERNAL_SERVICE
        assert exc_info.value.service == "content-store"
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_read_quotes_file_id_into_one_path_segment(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.raw_path == b"/api/files/team%2Fjan%20call.txt/content"
            return httpx.Response(200, text=SAMPLE_TRANSCRIPT)

        assert await http_store(handler).read_content("team/jan call.txt") == SAMPLE_TRANSCRIPT
