import unittest
from decimal import Decimal

from scriptdock.models import Module, Repository
from scriptdock.registry import Catalog, flatten


def _mod(name: str, version: str = "1.0", **kw) -> Module:
    return Module(
        qualified_name=name,
        display_name=kw.pop("display_name", name.title()),
        description=kw.pop("description", ""),
        author=kw.pop("author", "author"),
        version=Decimal(version),
        download_url=f"https://cdn.example.com/{name}.cs",
        **kw,
    )


def _repo(name: str, modules: list[Module]) -> Repository:
    return Repository(
        name=name,
        description="",
        maintainer="maintainer",
        is_beta_channel=False,
        modules=tuple(modules),
        source_url=f"https://repo.example.com/{name}.json",
    )


class TestFlatten(unittest.TestCase):
    def test_every_module_is_stamped_with_its_repository(self) -> None:
        catalog = flatten([_repo("base", [_mod("a"), _mod("b")]), _repo("extra", [_mod("c")])])

        self.assertEqual(sorted(catalog), ["a", "b", "c"])
        self.assertEqual(catalog["a"].origin_repository, "https://repo.example.com/base.json")
        self.assertEqual(catalog["c"].origin_repository, "https://repo.example.com/extra.json")
        self.assertEqual(catalog.conflicts, ())

    def test_collision_keeps_first_and_records_conflict(self) -> None:
        repos = [_repo("base", [_mod("a", "1.0")]), _repo("fork", [_mod("a", "9.0")])]

        with self.assertLogs("scriptdock.registry", level="WARNING"):
            catalog = flatten(repos)

        self.assertEqual(len(catalog), 1)
        self.assertEqual(catalog["a"].version, Decimal("1.0"))
        self.assertEqual(len(catalog.conflicts), 1)
        conflict = catalog.conflicts[0]
        self.assertEqual(conflict.qualified_name, "a")
        self.assertEqual(conflict.kept_repository, "https://repo.example.com/base.json")
        self.assertEqual(conflict.ignored_repository, "https://repo.example.com/fork.json")

    def test_accepts_resolver_index(self) -> None:
        index = {"base": _repo("base", [_mod("a")]), "extra": _repo("extra", [_mod("b")])}
        self.assertEqual(sorted(flatten(index)), ["a", "b"])

    def test_empty(self) -> None:
        catalog = flatten([])
        self.assertEqual(len(catalog), 0)
        self.assertIsNone(catalog.get("a"))


class TestCatalog(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = Catalog(
            [
                _mod("fast_travel", description="Teleport between waypoints", tags=frozenset({"movement"})),
                _mod("minimap", author="bob", tags=frozenset({"ui"})),
                _mod("nightly_hud", is_beta_channel=True, tags=frozenset({"ui"})),
            ]
        )

    def test_available_to_install_excludes_installed(self) -> None:
        names = [m.qualified_name for m in self.catalog.available_to_install({"minimap", "not_in_catalog"})]
        self.assertEqual(names, ["fast_travel", "nightly_hud"])

    def test_search_matches_text_fields(self) -> None:
        self.assertEqual([m.qualified_name for m in self.catalog.search("WAYPOINT")], ["fast_travel"])
        self.assertEqual([m.qualified_name for m in self.catalog.search("bob")], ["minimap"])
        self.assertEqual(len(self.catalog.search("")), 3)

    def test_search_filters(self) -> None:
        ui = [m.qualified_name for m in self.catalog.search(tag="ui")]
        self.assertEqual(ui, ["minimap", "nightly_hud"])
        stable_ui = [m.qualified_name for m in self.catalog.search(tag="ui", include_beta=False)]
        self.assertEqual(stable_ui, ["minimap"])


if __name__ == "__main__":
    unittest.main()
