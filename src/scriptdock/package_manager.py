from __future__ import annotations

import logging
import threading
from dataclasses import replace

from .client import Fetcher, FetchError, ScriptdockClient
from .config import Config
from .lifecycle import InstallationManager, InstallResult
from .models import ManifestFormatError, Module, Repository, parse_repository
from .registry import Catalog, flatten
from .resolver import RepositoryGraphResolver, ResolutionResult
from .storage import LocalScriptStorage, ScriptStorage

logger = logging.getLogger(__name__)


class PackageManager:
    """
    Wires configuration, repository resolution, the catalog and the installed set together.

    Construction does not touch the network; call ``refresh()`` to resolve the
    repository graph and build the catalog.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        fetcher: Fetcher | None = None,
        storage: ScriptStorage | None = None,
    ) -> None:
        self.config = config or Config()
        self._owns_client = fetcher is None
        self.fetcher: Fetcher = fetcher or ScriptdockClient(timeout_s=self.config.timeout_s)
        self.storage: ScriptStorage = storage or LocalScriptStorage(self.config.resolved_scripts_dir())
        self.resolver = RepositoryGraphResolver(self.fetcher, max_workers=self.config.max_workers)
        self.lifecycle = InstallationManager(self.fetcher, self.storage, installed=self.storage.load_installed())
        self._resolution = ResolutionResult()

    def close(self) -> None:
        if self._owns_client and isinstance(self.fetcher, ScriptdockClient):
            self.fetcher.close()

    def __enter__(self) -> "PackageManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def repositories(self) -> list[Repository]:
        return list(self._resolution.order)

    @property
    def resolution(self) -> ResolutionResult:
        return self._resolution

    @property
    def catalog(self) -> Catalog:
        return self.lifecycle.catalog

    def find_module(self, qualified_name: str) -> Module | None:
        module = self.catalog.get(qualified_name)
        if module is not None:
            return module
        record = self.lifecycle.installed.get(qualified_name)
        return record.module if record is not None else None

    def refresh(self, *, cancel: threading.Event | None = None) -> ResolutionResult:
        logger.info("Resolving %d root repositories", len(self.config.root_urls))
        result = self.resolver.resolve(self.config.root_urls, cancel=cancel)
        self._resolution = result
        self.lifecycle.set_catalog(flatten(result.order))
        return result

    def add_repository(self, url: str, *, cancel: threading.Event | None = None) -> InstallResult:
        try:
            text = self.fetcher.fetch(url, cancel=cancel)
        except FetchError as e:
            logger.error("Unable to fetch repository %s: %s", url, e)
            return InstallResult.DOWNLOAD_FAILED
        try:
            repo = parse_repository(text, source_url=url)
        except ManifestFormatError as e:
            logger.error("Repository %s is malformed: %s", url, e)
            return InstallResult.INVALID_MANIFEST

        if repo.name in self._resolution.index:
            return InstallResult.ALREADY_INSTALLED

        logger.info("Adding repository '%s'", repo.name)
        self.config = self.config.with_repository(url)
        self.refresh(cancel=cancel)
        return InstallResult.SUCCESS

    def remove_repository(self, name: str) -> InstallResult:
        repo = self._resolution.index.get(name)
        if repo is None:
            return InstallResult.NOT_INSTALLED

        logger.info("Removing repository '%s'", name)
        if repo.source_url:
            self.config = self.config.without_repository(repo.source_url)
        index = {k: v for k, v in self._resolution.index.items() if k != name}
        order = [r for r in self._resolution.order if r.name != name]
        self._resolution = replace(self._resolution, index=index, order=order)
        self.lifecycle.set_catalog(flatten(order))
        return InstallResult.SUCCESS
