"""Content store — where the recorder drops transcript text files.

Two backends behind the same two coroutines:

  LocalContentStore   a directory of .txt files (file id = filename)
  HttpContentStore    a file service speaking JSON over HTTP

    GET {base}/files?q=<email>&page_token=...  -> {"files": [...], "next_page_token": ...}
    GET {base}/files/{id}/content              -> text/plain

Remote calls go through with_retry(STORAGE_POLICY).
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

import httpx
from loguru import logger

from config.schemas import ContentFile
from config.settings import Settings
from services.errors import not_found, validation_error, external_service_error
from services.retry import STORAGE_POLICY, Sleep, with_retry

SERVICE = STORAGE_POLICY.service


class LocalContentStore:
    """Transcript directory on disk. Mostly for development and tests."""

    def __init__(self, root_dir: str | Path):
        self.root = Path(root_dir)

    def _path_for(self, file_id: str) -> Path:
        path = (self.root / file_id).resolve()
        if path.parent != self.root.resolve():
            raise validation_error(f"Invalid file id: {file_id}")
        return path

    def _list_sync(self, user_email: str | None) -> list[ContentFile]:
        if not self.root.is_dir():
            raise external_service_error(SERVICE, f"Content directory not found: {self.root}", operation="listTranscriptFiles")

        needle = user_email.lower().strip() if user_email else None
        files = []
        for path in self.root.glob("*.txt"):
            if needle and needle not in path.read_text(encoding="utf-8", errors="replace").lower():
                continue
            stat = path.stat()
            files.append(ContentFile(
                id=path.name,
                name=path.name,
                modified_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                size=stat.st_size,
            ))

        files.sort(key=lambda f: f.modified_time, reverse=True)
        return files

    async def list_transcript_files(self, user_email: str | None = None) -> list[ContentFile]:
        """Transcript files, newest first. With user_email, only files whose text mentions it."""
        files = await asyncio.to_thread(self._list_sync, user_email)
        logger.debug(f"Listed {len(files)} transcript files from {self.root}")
        return files

    async def read_content(self, file_id: str) -> str:
        path = self._path_for(file_id)
        if not path.is_file():
            raise not_found("Transcript file", file_id)
        return await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")


class HttpContentStore:
    """Remote file service client. Retries throttling, 5xx and dropped connections."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._sleep = sleep

    async def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        if self._client is not None:
            resp = await self._client.get(f"{self.base_url}{path}", headers=self._headers, params=params)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(f"{self.base_url}{path}", headers=self._headers, params=params)
        resp.raise_for_status()
        return resp

    async def list_transcript_files(self, user_email: str | None = None) -> list[ContentFile]:
        async def list_all() -> list[ContentFile]:
            files: list[ContentFile] = []
            page_token = None
            while True:
                params = {"q": user_email} if user_email else {}
                if page_token:
                    params["page_token"] = page_token
                data = (await self._get("/files", params=params)).json()
                for item in data.get("files") or []:
                    if item.get("id") and item.get("name"):
                        files.append(ContentFile(
                            id=item["id"],
                            name=item["name"],
                            modified_time=item.get("modified_time") or "",
                            md5_checksum=item.get("md5_checksum"),
                            size=item.get("size"),
                        ))
                page_token = data.get("next_page_token")
                if not page_token:
                    return files

        files = await with_retry("listTranscriptFiles", list_all, STORAGE_POLICY, sleep=self._sleep)
        logger.debug(f"Listed {len(files)} transcript files from {self.base_url}")
        return files

    async def read_content(self, file_id: str) -> str:
        async def fetch() -> str:
            try:
                return (await self._get(f"/files/{quote(file_id, safe='')}/content")).text
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    raise not_found("Transcript file", file_id) from e
                raise

        return await with_retry("readFileContent", fetch, STORAGE_POLICY, sleep=self._sleep)


def make_content_store(settings: Settings) -> LocalContentStore | HttpContentStore:
    if settings.content_backend == "http":
        return HttpContentStore(settings.content_base_url, settings.content_api_key)
    return LocalContentStore(settings.content_dir)
