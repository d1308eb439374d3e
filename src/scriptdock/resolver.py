from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable

from .client import Fetcher, FetchError, link_allowed
from .config import DEFAULT_MAX_WORKERS
from .models import ManifestFormatError, Repository, parse_repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionDiagnostic:
    url: str
    kind: str  # "fetch" | "format" | "duplicate" | "rejected" | "cancelled"
    message: str


@dataclass
class ResolutionResult:
    index: dict[str, Repository] = field(default_factory=dict)
    order: list[Repository] = field(default_factory=list)
    diagnostics: list[ResolutionDiagnostic] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.diagnostics and not self.cancelled


class RepositoryGraphResolver:
    """
    Discover every repository reachable from a set of root manifest URLs.

    The graph may contain cycles and shared children. Traversal is breadth-first in
    waves: the URLs of one wave are fetched concurrently on a bounded pool, then the
    results are merged on the calling thread in submission order. That keeps the
    visited sets single-writer and the resulting order deterministic.

    A URL is fetched at most once and a repository name is accepted at most once
    (first seen wins). A remote manifest may only link to http(s) sub-repositories.
    Failures never raise; they are logged and recorded as diagnostics so one
    broken node does not hide the rest of the graph.
    """

    def __init__(self, fetcher: Fetcher, *, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.fetcher = fetcher
        self.max_workers = max_workers

    def _load(self, url: str, cancel: threading.Event | None) -> Repository | Exception:
        try:
            text = self.fetcher.fetch(url, cancel=cancel)
            return parse_repository(text, source_url=url)
        except (FetchError, ManifestFormatError) as e:
            return e

    def resolve(self, root_urls: Iterable[str], *, cancel: threading.Event | None = None) -> ResolutionResult:
        result = ResolutionResult()
        seen_urls: set[str] = set()
        visited: set[str] = set()

        wave: list[str] = []
        for url in root_urls:
            url = url.strip()
            if url and url not in seen_urls:
                seen_urls.add(url)
                wave.append(url)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="scriptdock-resolve") as pool:
            while wave:
                if cancel is not None and cancel.is_set():
                    for url in wave:
                        result.diagnostics.append(ResolutionDiagnostic(url, "cancelled", "Resolution cancelled"))
                    result.cancelled = True
                    logger.info("Repository resolution cancelled with %d URL(s) pending", len(wave))
                    break

                logger.debug("Fetching %d repository manifest(s)", len(wave))
                futures = [pool.submit(self._load, url, cancel) for url in wave]
                next_wave: list[str] = []

                for url, future in zip(wave, futures):
                    loaded = future.result()
                    if isinstance(loaded, FetchError):
                        logger.error("Unable to fetch repository %s: %s", url, loaded)
                        result.diagnostics.append(ResolutionDiagnostic(url, "fetch", str(loaded)))
                        continue
                    if isinstance(loaded, Exception):
                        logger.error("Unable to parse repository %s: %s", url, loaded)
                        result.diagnostics.append(ResolutionDiagnostic(url, "format", str(loaded)))
                        continue

                    if loaded.name in visited:
                        kept = result.index[loaded.name].source_url
                        logger.warning(
                            "Repository '%s' from %s already loaded from %s; ignoring", loaded.name, url, kept
                        )
                        result.diagnostics.append(
                            ResolutionDiagnostic(url, "duplicate", f"Repository '{loaded.name}' already loaded from {kept}")
                        )
                        continue

                    visited.add(loaded.name)
                    result.index[loaded.name] = loaded
                    result.order.append(loaded)
                    logger.debug("Loaded repository '%s' (%d modules)", loaded.name, len(loaded.modules))

                    for child in loaded.sub_repository_urls:
                        if child in seen_urls:
                            continue
                        seen_urls.add(child)
                        if not link_allowed(child, referrer=url):
                            logger.warning("Ignoring local sub-repository %s listed by remote repository %s", child, url)
                            result.diagnostics.append(
                                ResolutionDiagnostic(child, "rejected", f"Local URL listed by remote repository {url}")
                            )
                            continue
                        next_wave.append(child)

                wave = next_wave

        logger.info(
            "Resolved %d repositories (%d diagnostic(s))", len(result.index), len(result.diagnostics)
        )
        return result
