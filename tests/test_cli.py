import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from scriptdock.cli import _merge_cfg, build_parser, main
from scriptdock.config import Config


def _write_repo(root: Path, versions: dict[str, float], *, deps: dict[str, list[str]] | None = None) -> Path:
    modules = []
    for name, version in versions.items():
        payload = root / "payloads" / f"{name}-{version}.cs"
        payload.parent.mkdir(parents=True, exist_ok=True)
        payload.write_text(f"// {name} {version}\n", encoding="utf-8")
        modules.append(
            {
                "DisplayName": name.title(),
                "QualifiedName": name,
                "Description": f"{name} module",
                "Author": "alice",
                "Version": version,
                "IsBetaChannel": False,
                "Dependencies": (deps or {}).get(name, []),
                "Tags": ["tools"],
                "Url": str(payload),
                "Changelog": [{"Version": version, "Added": [f"{name} {version}"]}],
            }
        )
    manifest = root / "base.json"
    manifest.write_text(
        json.dumps(
            {
                "Name": "local",
                "Description": "Local test repository",
                "Maintainer": "tests",
                "IsBetaChannel": False,
                "Repositories": [],
                "Modules": modules,
            }
        ),
        encoding="utf-8",
    )
    return manifest


class _CliCase(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)
        self.scripts = self.root / "scripts"
        self.config = self.root / "config.json"
        self.manifest = _write_repo(self.root, {"alpha": 1.0, "beta": 1.0}, deps={"beta": ["alpha"]})

        patcher = patch("scriptdock.cli.setup_logging")
        self.setup_logging = patcher.start()
        self.addCleanup(patcher.stop)

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        args = [
            "--config",
            str(self.config),
            "--base-url",
            str(self.manifest),
            "--scripts-dir",
            str(self.scripts),
            *argv,
        ]
        with patch("sys.stdout", new=io.StringIO()) as out, patch("sys.stderr", new=io.StringIO()) as err:
            rc = main(args)
        return rc, out.getvalue(), err.getvalue()


class TestParser(unittest.TestCase):
    def test_install_flags(self) -> None:
        args = build_parser().parse_args(["install", "alpha", "--no-deps", "--json"])
        self.assertEqual(args.cmd, "install")
        self.assertEqual(args.name, "alpha")
        self.assertTrue(args.no_deps)
        self.assertTrue(args.json)

    def test_list_filters_are_exclusive(self) -> None:
        with patch("sys.stderr", new=io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["list", "--installed", "--outdated"])

    def test_merge_cfg_precedence(self) -> None:
        args = build_parser().parse_args(["--timeout-s", "7", "repos"])
        base = Config(base_repository_url="https://cfg/base.json", scripts_dir="/cfg")
        with patch.dict("os.environ", {"SCRIPTDOCK_BASE_URL": "https://env/base.json", "SCRIPTDOCK_SCRIPTS_DIR": ""}):
            cfg = _merge_cfg(base, args)
        self.assertEqual(cfg.base_repository_url, "https://env/base.json")
        self.assertEqual(cfg.scripts_dir, "/cfg")
        self.assertEqual(cfg.timeout_s, 7.0)


class TestConfigCommands(_CliCase):
    def test_add_show_remove_repo(self) -> None:
        rc, _, _ = self.run_cli("config", "add-repo", "https://repo.example.com/extra.json")
        self.assertEqual(rc, 0)

        rc, out, _ = self.run_cli("config", "show")
        self.assertEqual(rc, 0)
        self.assertEqual(json.loads(out)["repository_urls"], ["https://repo.example.com/extra.json"])

        rc, _, _ = self.run_cli("config", "remove-repo", "https://repo.example.com/extra.json")
        self.assertEqual(rc, 0)
        rc, _, err = self.run_cli("config", "remove-repo", "https://repo.example.com/extra.json")
        self.assertEqual(rc, 1)
        self.assertIn("error:", err)

    def test_path(self) -> None:
        rc, out, _ = self.run_cli("config", "path")
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), str(self.config))


class TestLogging(_CliCase):
    def test_log_json_flag_selects_json_output(self) -> None:
        rc, _, _ = self.run_cli("--log-json", "config", "path")
        self.assertEqual(rc, 0)
        self.setup_logging.assert_called_once_with("WARNING", json_output=True)

    def test_plain_logging_by_default(self) -> None:
        self.run_cli("-v", "config", "path")
        self.setup_logging.assert_called_once_with("DEBUG", json_output=False)


class TestLifecycleCommands(_CliCase):
    def test_repos_and_list(self) -> None:
        rc, out, _ = self.run_cli("repos")
        self.assertEqual(rc, 0)
        self.assertIn("local", out)

        rc, out, _ = self.run_cli("list", "--json")
        self.assertEqual(rc, 0)
        names = [m["QualifiedName"] for m in json.loads(out)]
        self.assertEqual(names, ["alpha", "beta"])

    def test_install_list_uninstall(self) -> None:
        rc, out, _ = self.run_cli("install", "alpha")
        self.assertEqual(rc, 0)
        self.assertIn("success: alpha", out)
        self.assertTrue((self.scripts / "alpha.cs").is_file())

        rc, out, _ = self.run_cli("list", "--installed", "--json")
        self.assertEqual([(m["QualifiedName"], m["InstalledVersion"]) for m in json.loads(out)], [("alpha", "1.0")])

        rc, out, _ = self.run_cli("uninstall", "alpha")
        self.assertEqual(rc, 0)
        self.assertFalse((self.scripts / "alpha.cs").exists())

        rc, out, _ = self.run_cli("uninstall", "alpha")
        self.assertEqual(rc, 1)
        self.assertIn("not_installed: alpha", out)

    def test_install_pulls_dependencies_by_default(self) -> None:
        rc, out, _ = self.run_cli("install", "beta", "--json")
        self.assertEqual(rc, 0)
        self.assertEqual([r["name"] for r in json.loads(out)], ["alpha", "beta"])
        self.assertTrue((self.scripts / "alpha.cs").is_file())

    def test_install_no_deps_installs_only_the_module(self) -> None:
        rc, out, _ = self.run_cli("install", "beta", "--no-deps", "--json")
        self.assertEqual(rc, 0)
        self.assertEqual(json.loads(out), [{"name": "beta", "result": "success"}])
        self.assertFalse((self.scripts / "alpha.cs").exists())

    def test_uninstall_keeps_required_dependency_unless_forced(self) -> None:
        self.run_cli("install", "beta")

        rc, out, _ = self.run_cli("uninstall", "alpha")
        self.assertEqual(rc, 1)
        self.assertIn("is_required_dependency: alpha", out)
        self.assertTrue((self.scripts / "alpha.cs").is_file())

        rc, out, _ = self.run_cli("uninstall", "alpha", "--force")
        self.assertEqual(rc, 0)
        self.assertIn("success: alpha", out)
        self.assertFalse((self.scripts / "alpha.cs").exists())

    def test_install_unknown_module(self) -> None:
        rc, out, _ = self.run_cli("install", "ghost")
        self.assertEqual(rc, 1)
        self.assertIn("not_in_catalog: ghost", out)

    def test_update_all(self) -> None:
        self.run_cli("install", "alpha")
        self.run_cli("install", "beta")
        _write_repo(self.root, {"alpha": 1.5, "beta": 1.0}, deps={"beta": ["alpha"]})

        rc, out, _ = self.run_cli("list", "--outdated", "--json")
        self.assertEqual([m["QualifiedName"] for m in json.loads(out)], ["alpha"])

        rc, out, _ = self.run_cli("update-all", "--json")
        self.assertEqual(rc, 0)
        payload = json.loads(out)
        self.assertEqual(payload["passes"], 1)
        self.assertEqual(payload["results"], [{"name": "alpha", "result": "success"}])
        self.assertEqual((self.scripts / "alpha.cs").read_text(encoding="utf-8"), "// alpha 1.5\n")

        rc, out, _ = self.run_cli("update-all")
        self.assertEqual(rc, 0)
        self.assertIn("up to date", out)

    def test_update_without_newer_version(self) -> None:
        self.run_cli("install", "alpha")
        rc, out, _ = self.run_cli("update", "alpha")
        self.assertEqual(rc, 0)
        self.assertIn("no_update_available: alpha", out)

    def test_show_prints_changelog(self) -> None:
        rc, out, _ = self.run_cli("show", "alpha")
        self.assertEqual(rc, 0)
        self.assertIn("version: 1.0", out)
        self.assertIn("### Additions", out)

    def test_show_unknown_module(self) -> None:
        rc, _, err = self.run_cli("show", "ghost")
        self.assertEqual(rc, 1)
        self.assertIn("error: Module not found: ghost", err)


if __name__ == "__main__":
    unittest.main()
