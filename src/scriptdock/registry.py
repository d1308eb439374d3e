from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, replace
from typing import Iterable

from .models import Module, Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogConflict:
    qualified_name: str
    kept_repository: str | None
    ignored_repository: str | None


class Catalog(Mapping[str, Module]):
    """Read-only view of every module discoverable in the resolved repository graph."""

    def __init__(self, modules: Iterable[Module] = (), conflicts: Iterable[CatalogConflict] = ()) -> None:
        self._modules: dict[str, Module] = {}
        for module in modules:
            self._modules.setdefault(module.qualified_name, module)
        self.conflicts: tuple[CatalogConflict, ...] = tuple(conflicts)

    def __getitem__(self, qualified_name: str) -> Module:
        return self._modules[qualified_name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._modules)

    def __len__(self) -> int:
        return len(self._modules)

    def __repr__(self) -> str:  # pragma: no cover
        return f"Catalog({len(self._modules)} modules, {len(self.conflicts)} conflicts)"

    def modules(self) -> list[Module]:
        return list(self._modules.values())

    def available_to_install(self, installed_names: Iterable[str]) -> list[Module]:
        installed = set(installed_names)
        return [m for m in self._modules.values() if m.qualified_name not in installed]

    def search(self, text: str = "", *, include_beta: bool = True, tag: str | None = None) -> list[Module]:
        needle = text.strip().lower()
        out: list[Module] = []
        for module in self._modules.values():
            if not include_beta and module.is_beta_channel:
                continue
            if tag is not None and tag not in module.tags:
                continue
            if needle and not any(
                needle in value.lower()
                for value in (module.qualified_name, module.display_name, module.description, module.author)
            ):
                continue
            out.append(module)
        return out


def flatten(repositories: Mapping[str, Repository] | Iterable[Repository]) -> Catalog:
    """
    Flatten repositories into one catalog keyed by qualified name.

    Each module is stamped with the URL of the repository that published it.
    Repositories are visited in the given order (traversal order when passed a
    resolver index or order list). On a qualified-name collision the first
    module wins; the loser is recorded in ``Catalog.conflicts``.
    """
    repos = list(repositories.values()) if isinstance(repositories, Mapping) else list(repositories)

    kept: dict[str, Module] = {}
    conflicts: list[CatalogConflict] = []
    for repo in repos:
        for module in repo.modules:
            stamped = replace(module, origin_repository=repo.source_url)
            existing = kept.get(stamped.qualified_name)
            if existing is not None:
                logger.warning(
                    "Conflict for %s between '%s' and '%s'; keeping the first",
                    stamped.qualified_name,
                    existing.origin_repository,
                    stamped.origin_repository,
                )
                conflicts.append(
                    CatalogConflict(
                        qualified_name=stamped.qualified_name,
                        kept_repository=existing.origin_repository,
                        ignored_repository=stamped.origin_repository,
                    )
                )
                continue
            kept[stamped.qualified_name] = stamped

    return Catalog(kept.values(), conflicts)
