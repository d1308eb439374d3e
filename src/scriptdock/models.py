from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from .client import ScriptdockError


_QUALIFIED_NAME_RE = re.compile(r"^[a-zA-Z0-9._]+$")


def is_valid_qualified_name(value: str) -> bool:
    return bool(_QUALIFIED_NAME_RE.match(value)) and value not in (".", "..")


class ManifestFormatError(ScriptdockError):
    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(f"{message} (in {url})" if url else message)
        self.url = url


class ModuleType(str, Enum):
    SCRIPT = "script"
    LIBRARY = "library"
    SCRIPTLET = "scriptlet"


@dataclass(frozen=True)
class ChangelogEntry:
    version: Decimal
    added: tuple[str, ...] = ()
    fixed: tuple[str, ...] = ()
    changed: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    deprecated: tuple[str, ...] = ()


_CHANGELOG_SECTIONS = (
    ("added", "Added", "Additions"),
    ("fixed", "Fixed", "Fixes"),
    ("changed", "Changed", "Changes"),
    ("removed", "Removed", "Removals"),
    ("deprecated", "Deprecated", "Deprecations"),
)


@dataclass(frozen=True)
class Module:
    qualified_name: str
    display_name: str
    description: str
    author: str
    version: Decimal
    download_url: str
    is_beta_channel: bool = False
    dependencies: tuple[str, ...] = ()
    tags: frozenset[str] = field(default_factory=frozenset)
    type: ModuleType = ModuleType.SCRIPT
    help_url: str | None = None
    changelog: tuple[ChangelogEntry, ...] = ()
    origin_repository: str | None = None  # stamped by the registry, never read from a manifest

    def render_changelog(self) -> str:
        """Markdown changelog, newest version first. Empty when the module ships none."""
        if not self.changelog:
            return ""
        lines = [f"# {self.display_name}"]
        for entry in sorted(self.changelog, key=lambda e: e.version, reverse=True):
            lines.append(f"## {entry.version}")
            lines.append("")
            for attr, _, heading in _CHANGELOG_SECTIONS:
                items = getattr(entry, attr)
                if not items:
                    continue
                lines.append(f"### {heading}")
                lines.extend(f"* {item}" for item in items)
        return "\n".join(lines) + "\n"

    def to_sidecar(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "QualifiedName": self.qualified_name,
            "DisplayName": self.display_name,
            "Description": self.description,
            "Author": self.author,
            "Version": str(self.version),
            "IsBetaChannel": self.is_beta_channel,
            "Dependencies": list(self.dependencies),
            "Tags": sorted(self.tags),
            "Type": self.type.value,
            "Url": self.download_url,
            "Repository": self.origin_repository,
        }
        if self.help_url:
            payload["HelpUrl"] = self.help_url
        return payload


@dataclass(frozen=True)
class Repository:
    name: str
    description: str
    maintainer: str
    is_beta_channel: bool
    modules: tuple[Module, ...] = ()
    sub_repository_urls: tuple[str, ...] = ()
    source_url: str | None = None


def _require(obj: dict[str, Any], key: str, kind: type | tuple[type, ...], *, path: str, url: str | None) -> Any:
    if key not in obj:
        raise ManifestFormatError(f"Missing required field {path}.{key}", url=url)
    value = obj[key]
    # bool is an int subclass; never accept it where a number or string is expected.
    if isinstance(value, bool) and bool not in (kind if isinstance(kind, tuple) else (kind,)):
        raise ManifestFormatError(f"Field {path}.{key} has the wrong type", url=url)
    if not isinstance(value, kind):
        raise ManifestFormatError(f"Field {path}.{key} has the wrong type", url=url)
    return value


def _require_str_list(obj: dict[str, Any], key: str, *, path: str, url: str | None) -> list[str]:
    values = _require(obj, key, list, path=path, url=url)
    for i, v in enumerate(values):
        if not isinstance(v, str):
            raise ManifestFormatError(f"Field {path}.{key}[{i}] must be a string", url=url)
    return values


def _optional_str_list(obj: dict[str, Any], key: str, *, path: str, url: str | None) -> tuple[str, ...]:
    if obj.get(key) is None:
        return ()
    return tuple(_require_str_list(obj, key, path=path, url=url))


def _as_version(value: Any, *, path: str, url: str | None) -> Decimal:
    if isinstance(value, bool):
        raise ManifestFormatError(f"Field {path} must be a number", url=url)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    else:
        raise ManifestFormatError(f"Field {path} must be a number", url=url)
    if not result.is_finite():
        raise ManifestFormatError(f"Field {path} is not a finite number", url=url)
    return result


def _parse_changelog(raw: Any, *, path: str, url: str | None) -> tuple[ChangelogEntry, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ManifestFormatError(f"Field {path} must be a list", url=url)
    entries: list[ChangelogEntry] = []
    for i, item in enumerate(raw):
        item_path = f"{path}[{i}]"
        if not isinstance(item, dict):
            raise ManifestFormatError(f"Field {item_path} must be an object", url=url)
        if "Version" not in item:
            raise ManifestFormatError(f"Missing required field {item_path}.Version", url=url)
        sections = {
            attr: _optional_str_list(item, key, path=item_path, url=url) for attr, key, _ in _CHANGELOG_SECTIONS
        }
        entries.append(
            ChangelogEntry(version=_as_version(item["Version"], path=f"{item_path}.Version", url=url), **sections)
        )
    return tuple(entries)


def parse_module(obj: Any, *, path: str = "Module", url: str | None = None) -> Module:
    if not isinstance(obj, dict):
        raise ManifestFormatError(f"{path} must be an object", url=url)

    qualified_name = _require(obj, "QualifiedName", str, path=path, url=url).strip()
    if not qualified_name:
        raise ManifestFormatError(f"Field {path}.QualifiedName must not be empty", url=url)
    download_url = _require(obj, "Url", str, path=path, url=url).strip()
    if not download_url:
        raise ManifestFormatError(f"Field {path}.Url must not be empty", url=url)
    if "Version" not in obj:
        raise ManifestFormatError(f"Missing required field {path}.Version", url=url)

    raw_type = obj.get("Type")
    if raw_type is None:
        module_type = ModuleType.SCRIPT
    else:
        try:
            module_type = ModuleType(str(raw_type).strip().lower())
        except ValueError as e:
            raise ManifestFormatError(f"Field {path}.Type has unknown value {raw_type!r}", url=url) from e

    help_url = obj.get("HelpUrl")
    if help_url is not None and not isinstance(help_url, str):
        raise ManifestFormatError(f"Field {path}.HelpUrl must be a string", url=url)

    return Module(
        qualified_name=qualified_name,
        display_name=_require(obj, "DisplayName", str, path=path, url=url),
        description=_require(obj, "Description", str, path=path, url=url),
        author=_require(obj, "Author", str, path=path, url=url),
        version=_as_version(obj["Version"], path=f"{path}.Version", url=url),
        download_url=download_url,
        is_beta_channel=_require(obj, "IsBetaChannel", bool, path=path, url=url),
        dependencies=tuple(dict.fromkeys(_require_str_list(obj, "Dependencies", path=path, url=url))),
        tags=frozenset(_require_str_list(obj, "Tags", path=path, url=url)),
        type=module_type,
        help_url=(help_url.strip() or None) if help_url else None,
        changelog=_parse_changelog(obj.get("Changelog"), path=f"{path}.Changelog", url=url),
    )


def parse_repository(text: str, *, source_url: str | None = None) -> Repository:
    """
    Parse a repository manifest into a Repository, validating every required field.

    Numbers are decoded as Decimal so module versions compare exactly.
    Raises ManifestFormatError for malformed JSON or a payload that does not match the schema.
    """
    try:
        raw = json.loads(text, parse_float=Decimal)
    except json.JSONDecodeError as e:
        raise ManifestFormatError(f"Invalid JSON: {e}", url=source_url) from e
    if not isinstance(raw, dict):
        raise ManifestFormatError("Repository manifest must be a JSON object", url=source_url)

    path = "Repository"
    name = _require(raw, "Name", str, path=path, url=source_url).strip()
    if not name:
        raise ManifestFormatError("Field Repository.Name must not be empty", url=source_url)

    modules_raw = _require(raw, "Modules", list, path=path, url=source_url)
    modules = tuple(
        parse_module(m, path=f"{path}.Modules[{i}]", url=source_url) for i, m in enumerate(modules_raw)
    )
    sub_urls = _require_str_list(raw, "Repositories", path=path, url=source_url)

    return Repository(
        name=name,
        description=_require(raw, "Description", str, path=path, url=source_url),
        maintainer=_require(raw, "Maintainer", str, path=path, url=source_url),
        is_beta_channel=_require(raw, "IsBetaChannel", bool, path=path, url=source_url),
        modules=modules,
        sub_repository_urls=tuple(dict.fromkeys(u.strip() for u in sub_urls if u.strip())),
        source_url=source_url,
    )


def module_from_sidecar(obj: Any, *, url: str | None = None) -> Module:
    if not isinstance(obj, dict):
        raise ManifestFormatError("Sidecar must be an object", url=url)
    data = dict(obj)
    # Sidecars keep the version as a string so it round-trips exactly.
    if isinstance(data.get("Version"), str):
        try:
            data["Version"] = Decimal(data["Version"].strip())
        except InvalidOperation as e:
            raise ManifestFormatError(f"Sidecar.Version is not a number: {data['Version']!r}", url=url) from e
    module = parse_module(data, path="Sidecar", url=url)
    origin = data.get("Repository")
    if isinstance(origin, str) and origin:
        module = replace(module, origin_repository=origin)
    return module
