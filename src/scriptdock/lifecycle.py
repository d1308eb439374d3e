from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType

from .client import Fetcher, FetchError, link_allowed
from .models import Module, is_valid_qualified_name
from .registry import Catalog
from .storage import ScriptStorage, StorageError

logger = logging.getLogger(__name__)


class InstallResult(str, Enum):
    SUCCESS = "success"
    ALREADY_INSTALLED = "already_installed"
    NOT_INSTALLED = "not_installed"
    NOT_IN_CATALOG = "not_in_catalog"
    NO_UPDATE_AVAILABLE = "no_update_available"
    DOWNLOAD_FAILED = "download_failed"
    STORAGE_FAILED = "storage_failed"
    INVALID_NAME = "invalid_name"
    INVALID_MANIFEST = "invalid_manifest"
    IS_REQUIRED_DEPENDENCY = "is_required_dependency"

    @property
    def ok(self) -> bool:
        return self is InstallResult.SUCCESS


@dataclass(frozen=True)
class InstalledModule:
    qualified_name: str
    version: Decimal
    module: Module

    @classmethod
    def from_module(cls, module: Module) -> "InstalledModule":
        return cls(qualified_name=module.qualified_name, version=module.version, module=module)


@dataclass(frozen=True)
class ModuleResult:
    qualified_name: str
    result: InstallResult


@dataclass(frozen=True)
class InstalledChange:
    kind: str  # "installed" | "updated" | "uninstalled"
    qualified_name: str
    version: Decimal | None


@dataclass
class UpdateAllResult:
    results: list[ModuleResult] = field(default_factory=list)
    passes: int = 0
    cancelled: bool = False

    @property
    def succeeded(self) -> list[str]:
        return [r.qualified_name for r in self.results if r.result.ok]

    @property
    def failed(self) -> list[ModuleResult]:
        return [r for r in self.results if not r.result.ok]


ChangeListener = Callable[[InstalledChange], None]


class InstallationManager:
    """
    Owns the set of installed modules and every operation that changes it.

    Mutations (install, uninstall, update) are serialized on one lock. The installed
    map itself is immutable and swapped as a whole once an operation has fully
    succeeded, so readers always see a consistent snapshot without taking the lock
    and a failed download or storage write leaves the state untouched.

    Every operation returns an InstallResult; none of them raise for expected
    failures. A SUCCESS is the host's signal to reload scripts, and subscribers are
    notified after each successful mutation.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        storage: ScriptStorage,
        catalog: Catalog | None = None,
        *,
        installed: Iterable[Module] = (),
    ) -> None:
        self.fetcher = fetcher
        self.storage = storage
        self._catalog = catalog if catalog is not None else Catalog()
        self._write_lock = threading.RLock()
        self._listeners: list[ChangeListener] = []
        self._installed: Mapping[str, InstalledModule] = MappingProxyType(
            {m.qualified_name: InstalledModule.from_module(m) for m in installed}
        )

    # Read side

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    def set_catalog(self, catalog: Catalog) -> None:
        self._catalog = catalog

    @property
    def installed(self) -> Mapping[str, InstalledModule]:
        return self._installed

    def is_installed(self, qualified_name: str) -> bool:
        return qualified_name in self._installed

    def is_up_to_date(self, module: Module) -> bool:
        """True unless the catalog has a strictly newer version. Unknown modules count as up to date."""
        match = self._catalog.get(module.qualified_name)
        if match is None:
            return True
        installed = self._installed.get(module.qualified_name)
        version = installed.version if installed is not None else module.version
        return match.version <= version

    def available_to_install(self) -> list[Module]:
        return self._catalog.available_to_install(self._installed.keys())

    def get_update_candidates(self) -> list[Module]:
        installed = self._installed
        catalog = self._catalog
        candidates: list[Module] = []
        for name, record in installed.items():
            match = catalog.get(name)
            if match is not None and match.version > record.version:
                candidates.append(match)
        return candidates

    def dependents_of(self, qualified_name: str) -> list[str]:
        return sorted(
            name
            for name, record in self._installed.items()
            if name != qualified_name and qualified_name in record.module.dependencies
        )

    # Change notification

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        with self._write_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._write_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, change: InstalledChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:  # noqa: BLE001
                logger.exception("Change listener failed for %s", change.qualified_name)

    def _commit(self, state: dict[str, InstalledModule]) -> None:
        self._installed = MappingProxyType(state)

    # Write side

    def _download_and_store(
        self, module: Module, *, cancel: threading.Event | None, previous: Module | None = None
    ) -> InstallResult:
        if not link_allowed(module.download_url, referrer=module.origin_repository):
            logger.error(
                "Refusing to download %s from %s: local URL outside a local repository",
                module.qualified_name,
                module.download_url,
            )
            return InstallResult.DOWNLOAD_FAILED
        try:
            payload = self.fetcher.download(module.download_url, cancel=cancel)
        except FetchError as e:
            logger.error("Failed to download %s from %s: %s", module.qualified_name, module.download_url, e)
            return InstallResult.DOWNLOAD_FAILED

        try:
            self.storage.write(module, payload, previous=previous)
        except StorageError as e:
            logger.error("Failed to write %s to disk: %s", module.qualified_name, e)
            return InstallResult.STORAGE_FAILED

        if module.help_url and not link_allowed(module.help_url, referrer=module.origin_repository):
            logger.warning("Ignoring local help URL %s for %s", module.help_url, module.qualified_name)
        elif module.help_url:
            try:
                self.storage.write_help(module, self.fetcher.download(module.help_url, cancel=cancel))
            except (FetchError, StorageError) as e:
                logger.warning("Failed to fetch help for %s: %s", module.qualified_name, e)
        return InstallResult.SUCCESS

    def install(self, module: Module, *, cancel: threading.Event | None = None) -> InstallResult:
        with self._write_lock:
            if module.qualified_name in self._installed:
                return InstallResult.ALREADY_INSTALLED
            if not is_valid_qualified_name(module.qualified_name):
                logger.error("Refusing to install %r: invalid qualified name", module.qualified_name)
                return InstallResult.INVALID_NAME

            logger.info("Installing %s %s", module.qualified_name, module.version)
            result = self._download_and_store(module, cancel=cancel)
            if not result.ok:
                return result

            state = dict(self._installed)
            state[module.qualified_name] = InstalledModule.from_module(module)
            self._commit(state)
            logger.info("Installed %s %s", module.qualified_name, module.version)

        self._notify(InstalledChange("installed", module.qualified_name, module.version))
        return InstallResult.SUCCESS

    def install_with_dependencies(
        self, module: Module, *, cancel: threading.Event | None = None
    ) -> list[ModuleResult]:
        """
        Install ``module`` after its not-yet-installed dependencies, depth first.

        Dependencies missing from the catalog are reported as NOT_IN_CATALOG and
        skipped rather than failing the install. Dependency cycles are cut. The
        walk stops at the first install that does not succeed.
        """
        results: list[ModuleResult] = []
        seen: set[str] = set()

        def _walk(current: Module) -> bool:
            seen.add(current.qualified_name)
            for dep_name in current.dependencies:
                if dep_name in seen or dep_name in self._installed:
                    continue
                dep = self._catalog.get(dep_name)
                if dep is None:
                    logger.warning("Dependency %s of %s is not in the catalog", dep_name, current.qualified_name)
                    seen.add(dep_name)
                    results.append(ModuleResult(dep_name, InstallResult.NOT_IN_CATALOG))
                    continue
                if not _walk(dep):
                    return False
            outcome = self.install(current, cancel=cancel)
            results.append(ModuleResult(current.qualified_name, outcome))
            return outcome.ok or outcome is InstallResult.ALREADY_INSTALLED

        with self._write_lock:
            _walk(module)
        return results

    def uninstall(self, module: Module | str, *, check_dependents: bool = True) -> InstallResult:
        """
        Remove an installed module.

        Returns IS_REQUIRED_DEPENDENCY while another installed module depends on it,
        unless ``check_dependents`` is False.
        """
        name = module if isinstance(module, str) else module.qualified_name
        with self._write_lock:
            record = self._installed.get(name)
            if record is None:
                return InstallResult.NOT_INSTALLED
            if check_dependents and self.dependents_of(name):
                logger.info("Not uninstalling %s: required by %s", name, ", ".join(self.dependents_of(name)))
                return InstallResult.IS_REQUIRED_DEPENDENCY

            logger.info("Uninstalling %s", name)
            try:
                self.storage.delete(record.module)
            except StorageError as e:
                logger.error("Failed to uninstall %s: %s", name, e)
                return InstallResult.STORAGE_FAILED

            state = dict(self._installed)
            del state[name]
            self._commit(state)
            logger.info("Uninstalled %s", name)

        self._notify(InstalledChange("uninstalled", name, None))
        return InstallResult.SUCCESS

    def update(self, module: Module | str, *, cancel: threading.Event | None = None) -> InstallResult:
        name = module if isinstance(module, str) else module.qualified_name
        with self._write_lock:
            record = self._installed.get(name)
            if record is None:
                return InstallResult.NOT_INSTALLED
            latest = self._catalog.get(name)
            if latest is None:
                return InstallResult.NOT_IN_CATALOG
            if latest.version <= record.version:
                return InstallResult.NO_UPDATE_AVAILABLE

            logger.info("Updating %s %s -> %s", name, record.version, latest.version)
            result = self._download_and_store(latest, cancel=cancel, previous=record.module)
            if not result.ok:
                return result

            state = dict(self._installed)
            state[name] = InstalledModule.from_module(latest)
            self._commit(state)

        self._notify(InstalledChange("updated", name, latest.version))
        return InstallResult.SUCCESS

    def update_all(self, *, cancel: threading.Event | None = None) -> UpdateAllResult:
        """
        Update every outdated module until no candidates remain or a pass stops making progress.

        A module whose update failed is not retried in later passes. The loop also
        ends when a pass had no success, or when the outstanding candidate count did
        not shrink. Cancellation is checked between passes; completed updates stay.
        """
        outcome = UpdateAllResult()
        failed: set[str] = set()
        previous_outstanding: int | None = None

        while True:
            if cancel is not None and cancel.is_set():
                outcome.cancelled = True
                logger.info("Update-all cancelled after %d pass(es)", outcome.passes)
                break

            candidates = [m for m in self.get_update_candidates() if m.qualified_name not in failed]
            if not candidates:
                break
            if previous_outstanding is not None and len(candidates) >= previous_outstanding:
                logger.warning("Update-all made no progress; stopping with %d outstanding", len(candidates))
                break

            outcome.passes += 1
            logger.info("Update-all pass %d: %d candidate(s)", outcome.passes, len(candidates))
            progressed = False
            for candidate in candidates:
                result = self.update(candidate, cancel=cancel)
                outcome.results.append(ModuleResult(candidate.qualified_name, result))
                if result.ok:
                    progressed = True
                elif result is not InstallResult.NO_UPDATE_AVAILABLE:
                    failed.add(candidate.qualified_name)

            if not progressed:
                break
            previous_outstanding = len(candidates)

        return outcome
