from __future__ import annotations

import argparse
import json
import os
import sys
import textwrap
from dataclasses import asdict, replace
from typing import Any

from ._version import __version__
from .client import ScriptdockError
from .config import Config, config_path, load_config, save_config
from .lifecycle import InstallResult, ModuleResult
from .logging_setup import setup_logging
from .models import Module
from .package_manager import PackageManager


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    base_url = getattr(args, "base_url", None) or os.getenv("SCRIPTDOCK_BASE_URL") or base.base_repository_url
    scripts_dir = getattr(args, "scripts_dir", None) or os.getenv("SCRIPTDOCK_SCRIPTS_DIR") or base.scripts_dir
    timeout_s = getattr(args, "timeout_s", None) or os.getenv("SCRIPTDOCK_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s
    if timeout_s_f <= 0:
        timeout_s_f = base.timeout_s

    return replace(base, base_repository_url=base_url, scripts_dir=scripts_dir, timeout_s=timeout_s_f)


def _module_row(module: Module, *, installed: str = "") -> list[str]:
    return [
        module.qualified_name,
        str(module.version),
        installed,
        "beta" if module.is_beta_channel else "",
        module.display_name,
    ]


def _module_payload(module: Module) -> dict[str, Any]:
    payload = module.to_sidecar()
    payload["Changelog"] = module.render_changelog() or None
    return payload


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="scriptdock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install and update host-application scripts from remote repositories.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SCRIPTDOCK_CONFIG_PATH, SCRIPTDOCK_BASE_URL, SCRIPTDOCK_SCRIPTS_DIR, SCRIPTDOCK_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--config", help="Config file path (overrides SCRIPTDOCK_CONFIG_PATH)")
    p.add_argument("--base-url", help="Base repository manifest URL")
    p.add_argument("--scripts-dir", help="Directory installed scripts are written to")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    p.add_argument("--log-json", action="store_true", help="Write log records to stderr as JSON lines")
    p.add_argument("--version", action="version", version=f"scriptdock {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--base-repository-url")
    cfg_set.add_argument("--scripts-dir")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-workers", type=int)
    cfg_add = cfg_sub.add_parser("add-repo", help="Add an extra root repository URL")
    cfg_add.add_argument("url")
    cfg_rm = cfg_sub.add_parser("remove-repo", help="Remove an extra root repository URL")
    cfg_rm.add_argument("url")

    # repositories
    repos = sub.add_parser("repos", help="Resolve and list repositories")
    repos.add_argument("--json", action="store_true", help="Output JSON")

    # catalog
    ls = sub.add_parser("list", aliases=["ls"], help="List modules in the catalog")
    ls.add_argument("query", nargs="?", default="", help="Filter by name, description or author")
    which = ls.add_mutually_exclusive_group()
    which.add_argument("--installed", action="store_true", help="Only installed modules")
    which.add_argument("--available", action="store_true", help="Only modules that are not installed")
    which.add_argument("--outdated", action="store_true", help="Only installed modules with an update")
    beta = ls.add_mutually_exclusive_group()
    beta.add_argument("--beta", dest="no_beta", action="store_false", help="Include beta-channel modules (default)")
    beta.add_argument("--no-beta", dest="no_beta", action="store_true", help="Hide beta-channel modules")
    ls.add_argument("--tag", help="Only modules carrying this tag")
    ls.add_argument("--json", action="store_true", help="Output JSON")

    show = sub.add_parser("show", help="Show one module with its changelog")
    show.add_argument("name", help="Qualified module name")
    show.add_argument("--json", action="store_true", help="Output JSON")

    # lifecycle
    install = sub.add_parser("install", aliases=["i"], help="Install a module")
    install.add_argument("name", help="Qualified module name")
    install.add_argument("--no-deps", action="store_true", help="Do not install missing dependencies first")
    install.add_argument("--json", action="store_true", help="Output JSON")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Uninstall a module")
    uninstall.add_argument("name", help="Qualified module name")
    uninstall.add_argument(
        "--force",
        action="store_true",
        help="Uninstall even when another installed module depends on it",
    )
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    update = sub.add_parser("update", help="Update one installed module")
    update.add_argument("name", help="Qualified module name")
    update.add_argument("--json", action="store_true", help="Output JSON")

    update_all = sub.add_parser("update-all", help="Update every outdated module")
    update_all.add_argument("--json", action="store_true", help="Output JSON")

    return p


def _make_manager(args: argparse.Namespace) -> PackageManager:
    cfg = _merge_cfg(load_config(getattr(args, "config", None)), args)
    return PackageManager(cfg)


def _report(results: list[ModuleResult], *, as_json: bool) -> int:
    if as_json:
        _print_json([{"name": r.qualified_name, "result": r.result.value} for r in results])
    else:
        for r in results:
            print(f"{r.result.value}: {r.qualified_name}")
    return 0 if all(r.result.ok or r.result is InstallResult.ALREADY_INSTALLED for r in results) else 1


def cmd_config(args: argparse.Namespace) -> int:
    path_override = getattr(args, "config", None)
    if args.subcmd == "path":
        print(str(config_path(path_override)))
        return 0

    cfg = load_config(path_override)
    if args.subcmd == "show":
        payload = asdict(cfg)
        payload["repository_urls"] = list(cfg.repository_urls)
        _print_json(payload)
        return 0

    if args.subcmd == "set":
        updates: dict[str, Any] = {}
        if args.base_repository_url is not None:
            updates["base_repository_url"] = args.base_repository_url
        if args.scripts_dir is not None:
            updates["scripts_dir"] = args.scripts_dir
        if args.timeout_s is not None:
            if args.timeout_s <= 0:
                raise ScriptdockError("--timeout-s must be > 0")
            updates["timeout_s"] = args.timeout_s
        if args.max_workers is not None:
            if args.max_workers < 1:
                raise ScriptdockError("--max-workers must be >= 1")
            updates["max_workers"] = args.max_workers
        cfg = replace(cfg, **updates)
    elif args.subcmd == "add-repo":
        cfg = cfg.with_repository(args.url)
    elif args.subcmd == "remove-repo":
        if args.url not in cfg.repository_urls:
            raise ScriptdockError(f"Repository URL is not configured: {args.url}")
        cfg = cfg.without_repository(args.url)
    else:  # pragma: no cover
        raise AssertionError("unreachable")

    print(str(save_config(cfg, path_override)))
    return 0


def cmd_repos(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        result = manager.refresh()

    if args.json:
        _print_json(
            {
                "repositories": [
                    {
                        "name": r.name,
                        "description": r.description,
                        "maintainer": r.maintainer,
                        "is_beta_channel": r.is_beta_channel,
                        "url": r.source_url,
                        "modules": len(r.modules),
                    }
                    for r in result.order
                ],
                "diagnostics": [asdict(d) for d in result.diagnostics],
            }
        )
        return 0

    rows = [["NAME", "MODULES", "MAINTAINER", "URL"]]
    for r in result.order:
        rows.append([r.name, str(len(r.modules)), r.maintainer, r.source_url or ""])
    _print_table(rows)
    for d in result.diagnostics:
        print(f"warning: {d.kind}: {d.url}: {d.message}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        manager.refresh()
        lifecycle = manager.lifecycle
        installed = lifecycle.installed

        if args.installed:
            modules = [record.module for record in installed.values()]
        elif args.outdated:
            modules = lifecycle.get_update_candidates()
        else:
            modules = manager.catalog.search(args.query, include_beta=not args.no_beta, tag=args.tag)
            if args.available:
                modules = [m for m in modules if m.qualified_name not in installed]

    if args.installed or args.outdated:
        needle = args.query.strip().lower()
        modules = [
            m
            for m in modules
            if (not args.no_beta or not m.is_beta_channel)
            and (args.tag is None or args.tag in m.tags)
            and (not needle or needle in m.qualified_name.lower() or needle in m.display_name.lower())
        ]

    if args.json:
        out = []
        for m in modules:
            item = _module_payload(m)
            record = installed.get(m.qualified_name)
            item["InstalledVersion"] = str(record.version) if record else None
            out.append(item)
        _print_json(out)
        return 0

    rows = [["NAME", "VERSION", "INSTALLED", "CHANNEL", "DISPLAY NAME"]]
    for m in modules:
        record = installed.get(m.qualified_name)
        rows.append(_module_row(m, installed=str(record.version) if record else ""))
    _print_table(rows)
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        manager.refresh()
        module = manager.find_module(args.name)
        record = manager.lifecycle.installed.get(args.name)
    if module is None:
        raise ScriptdockError(f"Module not found: {args.name}")

    if args.json:
        payload = _module_payload(module)
        payload["InstalledVersion"] = str(record.version) if record else None
        _print_json(payload)
        return 0

    print(f"name: {module.qualified_name}")
    print(f"display_name: {module.display_name}")
    print(f"author: {module.author}")
    print(f"version: {module.version}")
    print(f"installed_version: {record.version if record else 'n/a'}")
    print(f"channel: {'beta' if module.is_beta_channel else 'stable'}")
    print(f"repository: {module.origin_repository or 'n/a'}")
    print(f"dependencies: {', '.join(module.dependencies) or 'none'}")
    print(f"tags: {', '.join(sorted(module.tags)) or 'none'}")
    print(f"description: {module.description}")
    changelog = module.render_changelog()
    if changelog:
        print()
        print(changelog.rstrip())
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        manager.refresh()
        module = manager.catalog.get(args.name)
        if module is None:
            results = [ModuleResult(args.name, InstallResult.NOT_IN_CATALOG)]
        elif args.no_deps:
            results = [ModuleResult(args.name, manager.lifecycle.install(module))]
        else:
            results = manager.lifecycle.install_with_dependencies(module)
    return _report(results, as_json=args.json)


def cmd_uninstall(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        result = manager.lifecycle.uninstall(args.name, check_dependents=not args.force)
    return _report([ModuleResult(args.name, result)], as_json=args.json)


def cmd_update(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        manager.refresh()
        result = manager.lifecycle.update(args.name)
    rc = _report([ModuleResult(args.name, result)], as_json=args.json)
    return 0 if result is InstallResult.NO_UPDATE_AVAILABLE else rc


def cmd_update_all(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        manager.refresh()
        outcome = manager.lifecycle.update_all()

    if args.json:
        _print_json(
            {
                "passes": outcome.passes,
                "cancelled": outcome.cancelled,
                "results": [{"name": r.qualified_name, "result": r.result.value} for r in outcome.results],
            }
        )
    else:
        if not outcome.results:
            print("All modules are up to date.")
        for r in outcome.results:
            print(f"{r.result.value}: {r.qualified_name}")
    return 0 if not outcome.failed else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging("DEBUG" if args.verbose else "WARNING", json_output=args.log_json)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "repos":
            return cmd_repos(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "show":
            return cmd_show(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd == "update-all":
            return cmd_update_all(args)
        raise AssertionError("unreachable")
    except ScriptdockError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
