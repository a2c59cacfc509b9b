import tempfile
import unittest
from pathlib import Path
from unittest import mock

from stackreg.config import ExposeConfig, ProjectConfig
from stackreg.git_source import GitSource
from stackreg.models import ResolutionGraph, ResolvedService
from stackreg.resolver import (
    collect_dependencies,
    evaluate_conditions,
    evaluate_when,
    get_enabled_services,
    topological_sort,
)
from stackreg.loader import parse_service_definition

from tests.support import FakeGit, git_source, local_source, make_registry, service_yaml, write_override, write_service


def _node(name, deps):
    definition = parse_service_definition(service_yaml(name))
    return ResolvedService(
        name=name, source="local", source_path="", definition=definition, definition_hash="", dependencies=deps
    )


class ConditionTests(unittest.TestCase):
    def test_when_vocabulary(self):
        vpn = ProjectConfig(vpn_enabled=True)
        plain = ProjectConfig(vpn_enabled=False, expose=ExposeConfig(mode="direct"))
        self.assertTrue(evaluate_when("", plain))
        self.assertTrue(evaluate_when("{{ .Config.VPNEnabled }}", vpn))
        self.assertFalse(evaluate_when("{{ .Config.VPNEnabled }}", plain))
        self.assertTrue(evaluate_when("{{ not .Config.VPNEnabled }}", plain))
        self.assertTrue(evaluate_when('{{ eq .Config.Expose.Mode "cloudflared" }}', vpn))
        self.assertFalse(evaluate_when('{{ eq .Config.Expose.Mode "cloudflared" }}', plain))
        path_routing = ProjectConfig.model_validate({"routing": {"strategy": "path"}})
        self.assertTrue(evaluate_when('{{ eq .Config.Routing.Strategy "path" }}', path_routing))

    def test_unknown_when_is_false_and_logged(self):
        with self.assertLogs("stackreg.resolver", level="WARNING"):
            self.assertFalse(evaluate_when("{{ .Config.VPN }}", ProjectConfig(vpn_enabled=True)))

    def test_unknown_require_config_is_false(self):
        definition = parse_service_definition(service_yaml("x", require_config="gpu_enabled"))
        with self.assertLogs("stackreg.resolver", level="WARNING"):
            self.assertFalse(evaluate_conditions(definition.conditions, ProjectConfig()))

    def test_always_short_circuits(self):
        definition = parse_service_definition(service_yaml("x", always=True, require_config="vpn_enabled"))
        self.assertTrue(evaluate_conditions(definition.conditions, ProjectConfig()))

    def test_require_feature(self):
        definition = parse_service_definition(service_yaml("x", require_feature="gpu"))
        self.assertFalse(evaluate_conditions(definition.conditions, ProjectConfig()))
        self.assertTrue(evaluate_conditions(definition.conditions, ProjectConfig(features=["gpu"])))

    def test_dependencies_are_deduplicated_in_order(self):
        definition = parse_service_definition(
            service_yaml(
                "qbittorrent",
                required=["traefik", "authelia", "traefik"],
                conditional=[("gluetun", "{{ .Config.VPNEnabled }}"), ("authelia", "")],
            )
        )
        self.assertEqual(collect_dependencies(definition, ProjectConfig()), ["traefik", "authelia"])
        self.assertEqual(
            collect_dependencies(definition, ProjectConfig(vpn_enabled=True)), ["traefik", "authelia", "gluetun"]
        )


class TopologicalSortTests(unittest.TestCase):
    def test_dependencies_come_first(self):
        services = {
            "sonarr": _node("sonarr", ["traefik", "qbittorrent"]),
            "qbittorrent": _node("qbittorrent", ["traefik"]),
            "traefik": _node("traefik", []),
            "homepage": _node("homepage", ["traefik", "missing"]),
        }
        self.assertEqual(topological_sort(services), ["traefik", "homepage", "qbittorrent", "sonarr"])

    def test_enabled_services_filter(self):
        graph = ResolutionGraph(services={"traefik": _node("traefik", []), "gluetun": _node("gluetun", [])})
        graph.services["gluetun"].enabled = False
        self.assertEqual(list(get_enabled_services(graph)), ["traefik"])


class ResolveTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.local = self.tmp / "local"
        self.local.mkdir()

    def tearDown(self):
        self._tmp.cleanup()

    def test_cycle_is_reported_with_empty_order(self):
        write_service(self.local, "alpha", required=["beta"])
        write_service(self.local, "beta", required=["alpha"])
        registry = make_registry(self.tmp, [local_source("local", self.local, 100)])
        with self.assertLogs("stackreg.resolver", level="ERROR"):
            graph = registry.resolve(ProjectConfig())
        self.assertEqual(graph.order, [])
        self.assertEqual(len(graph.services), 2)
        self.assertTrue(any("circular dependency" in str(e) for e in graph.errors))

    def test_missing_dependency_is_attributed_to_dependent(self):
        write_service(self.local, "homepage", required=["ghost"])
        write_service(self.local, "traefik")
        registry = make_registry(self.tmp, [local_source("local", self.local, 100)])
        graph = registry.resolve(ProjectConfig())
        self.assertEqual(graph.order, ["homepage", "traefik"])
        self.assertEqual([(e.service, e.message) for e in graph.errors], [("homepage", "dependency ghost failed")])

    def test_conditions_exclude_services(self):
        write_service(self.local, "gluetun", require_config="vpn_enabled")
        write_service(self.local, "qbittorrent", conditional=[("gluetun", "{{ .Config.VPNEnabled }}")])
        registry = make_registry(self.tmp, [local_source("local", self.local, 100)])

        off = registry.resolve(ProjectConfig(vpn_enabled=False))
        self.assertEqual(off.order, ["qbittorrent"])
        on = registry.resolve(ProjectConfig(vpn_enabled=True))
        self.assertEqual(on.order, ["gluetun", "qbittorrent"])
        self.assertEqual(on.services["qbittorrent"].dependencies, ["gluetun"])

    def test_resolution_is_idempotent(self):
        write_service(self.local, "traefik", always=True)
        write_service(self.local, "authelia", required=["traefik"])
        write_service(self.local, "sonarr", addon=True, required=["traefik", "authelia"])
        registry = make_registry(self.tmp, [local_source("local", self.local, 100)])
        config = ProjectConfig(addons=["sonarr"])

        first = registry.resolve(config)
        second = registry.resolve(config)
        self.assertEqual(first.order, ["traefik", "authelia", "sonarr"])
        self.assertEqual(first.order, second.order)
        self.assertEqual(
            {n: s.definition_hash for n, s in first.services.items()},
            {n: s.definition_hash for n, s in second.services.items()},
        )
        self.assertTrue(all(s.definition_hash.startswith("sha256:") for s in first.services.values()))
        self.assertEqual(len(first.services["traefik"].definition_hash), len("sha256:") + 16)

    def test_overrides_apply_in_ascending_priority(self):
        low, mid, high = self.tmp / "p10", self.tmp / "p50", self.tmp / "p90"
        write_service(low, "sonarr", tag="3.0", required=["traefik"])
        write_service(low, "traefik", always=True)
        write_override(
            low / "sonarr",
            "sonarr",
            "spec:\n  image:\n    tag: '10'\n  environment:\n    additional:\n      - name: FROM_10\n        value: x\n"
            "routing:\n  subdomain: ten\n  path: /ten\n",
        )
        write_override(
            mid / "sonarr",
            "sonarr",
            "spec:\n  image:\n    tag: '50'\n  environment:\n    additional:\n      - name: FROM_50\n        value: y\n",
        )
        write_override(high / "sonarr", "sonarr", "routing:\n  subdomain: ninety\n")
        write_override(high / "traefik", "something-else", "routing:\n  subdomain: nope\n")

        registry = make_registry(
            self.tmp,
            [local_source("p50", mid, 50), local_source("p90", high, 90), local_source("p10", low, 10)],
        )
        graph = registry.resolve(ProjectConfig())
        sonarr = graph.services["sonarr"]

        self.assertEqual(sonarr.source, "p10")
        self.assertEqual(len(sonarr.overrides), 3)
        final = sonarr.final_definition
        self.assertEqual(final.spec.image.tag, "50")
        self.assertEqual(final.routing.subdomain, "ninety")
        self.assertEqual(final.routing.path, "/ten")
        self.assertEqual([e.name for e in final.spec.environment.static], ["FROM_10", "FROM_50"])
        self.assertEqual(sonarr.definition.spec.image.tag, "3.0")
        self.assertEqual(graph.services["traefik"].overrides, [])

    def test_resolve_service_single(self):
        write_service(self.local, "traefik", always=True)
        write_service(self.local, "sonarr", addon=True, required=["traefik"])
        registry = make_registry(self.tmp, [local_source("local", self.local, 100)])
        resolved = registry.resolver.resolve_service(ProjectConfig(), "sonarr")
        self.assertEqual(resolved.dependencies, ["traefik"])
        self.assertTrue(resolved.source_path.endswith("sonarr/service.yaml"))


class EndToEndTests(unittest.TestCase):
    """Embedded (traefik) + empty local + git (sonarr add-on)."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.bundle = self.tmp / "bundle"
        write_service(self.bundle, "traefik", subdir="core", always=True, category="networking")
        self.template = self.tmp / "remote"
        write_service(self.template, "sonarr", subdir="addons", addon=True, required=["traefik"])
        self.local = self.tmp / "local"
        self.local.mkdir()
        self.registry = make_registry(
            self.tmp,
            [local_source("local", self.local, 100), git_source("community", priority=0)],
            embedded_root=self.bundle,
        )
        self.fake = FakeGit(self.template)
        patcher = mock.patch.object(GitSource, "_run_git", autospec=True, side_effect=self.fake)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self._tmp.cleanup()

    def test_enabled_addon_is_ordered_after_its_dependency(self):
        graph = self.registry.resolve(ProjectConfig(addons=["sonarr"]))
        self.assertEqual(graph.errors, [])
        self.assertEqual(graph.order, ["traefik", "sonarr"])
        self.assertEqual(sorted(graph.services), ["sonarr", "traefik"])
        self.assertTrue(all(s.enabled for s in graph.services.values()))
        self.assertEqual(graph.services["traefik"].source, "embedded")
        self.assertEqual(graph.services["sonarr"].source, "community")

    def test_addon_not_enabled_is_absent(self):
        graph = self.registry.resolve(ProjectConfig())
        self.assertEqual(list(graph.services), ["traefik"])
        self.assertNotIn("sonarr", graph.services)
        self.assertEqual(graph.order, ["traefik"])


if __name__ == "__main__":
    unittest.main()
