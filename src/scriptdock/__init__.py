from ._version import __version__
from .client import FetchError, ScriptdockClient, ScriptdockError, ScriptdockHTTPError
from .config import Config, load_config, save_config
from .lifecycle import InstallationManager, InstalledChange, InstalledModule, InstallResult, ModuleResult, UpdateAllResult
from .models import ManifestFormatError, Module, ModuleType, Repository, parse_repository
from .package_manager import PackageManager
from .registry import Catalog, flatten
from .resolver import RepositoryGraphResolver, ResolutionResult
from .storage import LocalScriptStorage, StorageError

__all__ = [
    "__version__",
    "Catalog",
    "Config",
    "FetchError",
    "InstallResult",
    "InstallationManager",
    "InstalledChange",
    "InstalledModule",
    "LocalScriptStorage",
    "ManifestFormatError",
    "Module",
    "ModuleResult",
    "ModuleType",
    "PackageManager",
    "Repository",
    "RepositoryGraphResolver",
    "ResolutionResult",
    "ScriptdockClient",
    "ScriptdockError",
    "ScriptdockHTTPError",
    "StorageError",
    "UpdateAllResult",
    "flatten",
    "load_config",
    "parse_repository",
    "save_config",
]
