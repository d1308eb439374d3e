from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from .client import ScriptdockError
from .models import ManifestFormatError, Module, ModuleType, is_valid_qualified_name, module_from_sidecar

logger = logging.getLogger(__name__)

SIDECAR_DIRNAME = "packages"
HELP_DIRNAME = "help"


class StorageError(ScriptdockError):
    pass


class ScriptStorage(Protocol):
    def write(self, module: Module, payload: bytes, *, previous: Module | None = None) -> None:
        ...

    def delete(self, module: Module) -> None:
        ...

    def write_help(self, module: Module, payload: bytes) -> None:
        ...

    def load_installed(self) -> list[Module]:
        ...


def _suffix(module_type: ModuleType) -> tuple[str, str]:
    """(payload suffix, sidecar/help infix) for a module type."""
    if module_type is ModuleType.LIBRARY:
        return ".lib.cs", ".lib"
    if module_type is ModuleType.SCRIPTLET:
        return ".js", ""
    return ".cs", ""


def _write_bytes_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    tmp.replace(path)


def _write_json_atomic(path: Path, data: Any) -> None:
    _write_bytes_atomic(path, (json.dumps(data, indent=2, sort_keys=True) + "\n").encode("utf-8"))


class LocalScriptStorage:
    """
    Installed modules on disk.

    Layout under ``root``::

        <qname>.cs | <qname>.lib.cs | <qname>.js     payload
        packages/<qname>[.lib].json                  sidecar (installed module snapshot)
        help/<qname>[.lib].md                        optional help document

    The sidecar is the record of what is installed; its version is the installed version.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser().resolve()

    def payload_path(self, module: Module) -> Path:
        suffix, _ = _suffix(module.type)
        return self.root / f"{module.qualified_name}{suffix}"

    def sidecar_path(self, module: Module) -> Path:
        _, infix = _suffix(module.type)
        return self.root / SIDECAR_DIRNAME / f"{module.qualified_name}{infix}.json"

    def help_path(self, module: Module) -> Path:
        _, infix = _suffix(module.type)
        return self.root / HELP_DIRNAME / f"{module.qualified_name}{infix}.md"

    def _paths(self, module: Module) -> tuple[Path, Path, Path]:
        return self.payload_path(module), self.sidecar_path(module), self.help_path(module)

    def write(self, module: Module, payload: bytes, *, previous: Module | None = None) -> None:
        """
        Write the payload and its sidecar.

        ``previous`` is the record being replaced. Its files that the new record no
        longer uses (a changed module type) are removed once the write succeeded.
        """
        path = self.payload_path(module)
        sidecar = self.sidecar_path(module)
        old_payload: bytes | None = None
        try:
            if path.exists():
                old_payload = path.read_bytes()
            _write_bytes_atomic(path, payload)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

        try:
            _write_json_atomic(sidecar, module.to_sidecar())
        except OSError as e:
            # Put the payload back the way it was so the pair stays consistent.
            try:
                if old_payload is None:
                    path.unlink(missing_ok=True)
                else:
                    _write_bytes_atomic(path, old_payload)
            except OSError:
                logger.exception("Could not restore %s after a failed sidecar write", path)
            raise StorageError(f"Failed to write {sidecar}: {e}") from e

        if previous is not None:
            keep = set(self._paths(module))
            for stale in self._paths(previous):
                if stale in keep:
                    continue
                try:
                    stale.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("Could not remove stale file %s: %s", stale, e)

    def write_help(self, module: Module, payload: bytes) -> None:
        path = self.help_path(module)
        try:
            _write_bytes_atomic(path, payload)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    def delete(self, module: Module) -> None:
        for path in self._paths(module):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to delete {path}: {e}") from e

    def load_installed(self) -> list[Module]:
        sidecar_dir = self.root / SIDECAR_DIRNAME
        if not sidecar_dir.is_dir():
            return []

        found: dict[str, Module] = {}
        for sidecar in sorted(sidecar_dir.glob("*.json")):
            try:
                raw = json.loads(sidecar.read_text(encoding="utf-8"))
                module = module_from_sidecar(raw, url=str(sidecar))
            except (OSError, json.JSONDecodeError, ManifestFormatError) as e:
                logger.warning("Failed to read sidecar %s: %s", sidecar, e)
                continue
            if not is_valid_qualified_name(module.qualified_name):
                logger.warning("Sidecar %s has an invalid qualified name; ignoring", sidecar)
                continue
            if not self.payload_path(module).exists():
                logger.warning("Sidecar %s has no payload at %s; ignoring", sidecar, self.payload_path(module))
                continue
            existing = found.get(module.qualified_name)
            if existing is not None:
                logger.warning("Two sidecars for %s; keeping the newer version", module.qualified_name)
                if existing.version >= module.version:
                    continue
            found[module.qualified_name] = module
        return list(found.values())
