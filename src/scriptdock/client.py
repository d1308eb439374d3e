from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S

logger = logging.getLogger(__name__)


class ScriptdockError(RuntimeError):
    pass


class FetchError(ScriptdockError):
    """A manifest or payload could not be retrieved (transport, timeout, status or cancellation)."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class ScriptdockHTTPError(FetchError):
    def __init__(self, status_code: int, body: str, *, url: str | None = None) -> None:
        super().__init__(f"HTTP {status_code}: {body}", url=url)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


class Fetcher(Protocol):
    def fetch(self, url: str, *, cancel: threading.Event | None = None) -> str:
        ...

    def download(self, url: str, *, cancel: threading.Event | None = None) -> bytes:
        ...


def is_remote_url(url: str) -> bool:
    try:
        return urlsplit(url).scheme.lower() in ("http", "https")
    except ValueError:
        return False


def link_allowed(url: str, *, referrer: str | None) -> bool:
    """
    Whether a URL found in a manifest may be followed.

    Links from a remote manifest must be http(s). Only a manifest that was itself
    read from local disk may point at local files.
    """
    if is_remote_url(url):
        return True
    return referrer is not None and not is_remote_url(referrer)


def _local_path(url: str) -> Path | None:
    # Local file support for offline repositories.
    if url.startswith("file://"):
        return Path(url.removeprefix("file://"))
    if "://" not in url:
        return Path(url)
    return None


class ScriptdockClient:
    """
    Thin transport over httpx: one GET per call, no retries and no caching.

    Every failure mode surfaces as FetchError so callers can treat a broken node
    as "contributes nothing" instead of aborting.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        user_agent: str | None = None,
        default_headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        headers = {"user-agent": user_agent or f"scriptdock/{__version__}"}
        headers.update(default_headers or {})
        self._http = httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ScriptdockClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def fetch(self, url: str, *, cancel: threading.Event | None = None) -> str:
        data = self.download(url, cancel=cancel)
        try:
            return data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise FetchError(f"Response from {url} is not valid UTF-8: {e}", url=url) from e

    def download(self, url: str, *, cancel: threading.Event | None = None) -> bytes:
        if cancel is not None and cancel.is_set():
            raise FetchError(f"Request cancelled: {url}", url=url)

        path = _local_path(url)
        if path is not None:
            try:
                return path.read_bytes()
            except (OSError, ValueError) as e:
                raise FetchError(f"Could not read {path}: {e}", url=url) from e

        logger.debug("GET %s", url)
        chunks: list[bytes] = []
        try:
            with self._http.stream("GET", url) as resp:
                if resp.status_code >= 300:
                    resp.read()
                    raise ScriptdockHTTPError(resp.status_code, resp.text, url=url)
                for chunk in resp.iter_bytes():
                    if cancel is not None and cancel.is_set():
                        raise FetchError(f"Request cancelled: {url}", url=url)
                    chunks.append(chunk)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(f"Request failed for {url}: {e}", url=url) from e
        return b"".join(chunks)
