from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S
from .errors import CancelledError, FetchError, FetchKind

logger = logging.getLogger(__name__)

USER_AGENT = f"skillsync/{__version__}"
CHUNK_SIZE = 64 * 1024


def _origin(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc.lower(), "", "", "")).rstrip("/")


@dataclass(frozen=True)
class ConditionalResponse:
    status_code: int
    content: bytes
    etag: str | None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


def _error_for_status(url: str, status_code: int, body: str) -> FetchError:
    detail = body.strip()[:200]
    if status_code in (401, 403):
        return FetchError(FetchKind.AUTH, f"HTTP {status_code} for {url}: missing or invalid credentials. {detail}".strip())
    if status_code == 404:
        return FetchError(FetchKind.NOT_FOUND, f"HTTP 404 for {url}: not found.")
    return FetchError(FetchKind.NETWORK, f"HTTP {status_code} for {url}. {detail}".strip())


class HttpClient:
    """
    Thin httpx wrapper used by the source fetcher.

    The auth token is only attached to requests for the configured server's
    origin; artifacts hosted elsewhere are fetched anonymously.
    """

    def __init__(
        self,
        *,
        server_url: str | None = None,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/") if server_url else None
        self.token = token
        self.timeout_s = timeout_s
        self._http = httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _auth_for_url(self, url: str) -> bool:
        if not self.token or not self.server_url:
            return False
        url_origin = _origin(url)
        base_origin = _origin(self.server_url)
        return bool(url_origin and base_origin and url_origin == base_origin)

    def _headers(self, url: str, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = dict(extra or {})
        if self._auth_for_url(url):
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def get_bytes(self, url: str, *, cancel: threading.Event | None = None) -> bytes:
        headers = self._headers(url)
        chunks: list[bytes] = []
        try:
            with self._http.stream("GET", url, headers=headers) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise _error_for_status(url, resp.status_code, resp.text)
                for chunk in resp.iter_bytes(CHUNK_SIZE):
                    if cancel is not None and cancel.is_set():
                        raise CancelledError(f"Download of {url} was cancelled")
                    chunks.append(chunk)
        except httpx.HTTPError as e:
            raise FetchError(FetchKind.NETWORK, f"Request to {url} failed: {e}") from e
        data = b"".join(chunks)
        logger.debug("GET %s -> %d bytes", url, len(data))
        return data

    def get_conditional(self, url: str, *, etag: str | None = None) -> ConditionalResponse:
        extra = {"If-None-Match": etag} if etag else None
        try:
            resp = self._http.get(url, headers=self._headers(url, extra))
        except httpx.HTTPError as e:
            raise FetchError(FetchKind.NETWORK, f"Request to {url} failed: {e}") from e

        if resp.status_code == 304:
            logger.debug("GET %s -> 304 not modified", url)
            return ConditionalResponse(status_code=304, content=b"", etag=resp.headers.get("etag") or etag)
        if resp.status_code >= 400:
            raise _error_for_status(url, resp.status_code, resp.text)
        return ConditionalResponse(
            status_code=resp.status_code,
            content=resp.content,
            etag=resp.headers.get("etag"),
        )
