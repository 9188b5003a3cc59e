"""
Unit tests for module definitions and child-unit expansion
"""

import unittest
from unittest.mock import Mock
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nebula.errors import ConfigurationError
from nebula.module import GraphAware, Legacy, Module, define_module, legacy_module, split_modules, unit_name
from nebula.secrets import Sensitive


def charts(config):
    return [(name, {"release": name}) for name in config["charts"]]


@define_module("bundle", provides=["apps"], requires=["cluster"], children=charts)
def bundle(config, opts=None):
    return Mock(outputs={"config": config})


@define_module("single", provides=["cluster"], needs=["cloud-default"])
def single(config, opts=None):
    return Mock(outputs={})


class TestDefinitions(unittest.TestCase):

    def test_define_module_builds_graph_aware_variant(self):
        self.assertIsInstance(bundle, GraphAware)
        self.assertEqual(bundle.name, "bundle")
        self.assertEqual(bundle.descriptor.provides, frozenset(["apps"]))
        self.assertEqual(bundle.descriptor.requires, frozenset(["cluster"]))
        self.assertEqual(single.needs, ("cloud-default",))

    def test_legacy_module_variant(self):
        def old_style_app(config, opts=None):
            return None

        legacy = legacy_module(old_style_app)

        self.assertIsInstance(legacy, Legacy)
        self.assertEqual(legacy.name, "old-style-app")
        self.assertIsNone(legacy({}).descriptor)

    def test_legacy_lambda_needs_name(self):
        with self.assertRaises(ConfigurationError):
            legacy_module(lambda config, opts=None: None)

    def test_split_modules(self):
        legacy = legacy_module(lambda config, opts=None: None, name="extra")
        graph_aware, plain = split_modules([legacy({}), single({}), bundle({})])

        self.assertEqual([m.name for m in graph_aware], ["single", "bundle"])
        self.assertEqual([m.name for m in plain], ["extra"])

    def test_build_passes_config_and_opts(self):
        factory = Mock()
        module = Module(Legacy(name="x", factory=factory), {"a": 1})

        module.build({"a": 1}, "opts")

        factory.assert_called_once_with({"a": 1}, "opts")


class TestExpansion(unittest.TestCase):

    def test_module_without_children_is_single_unit(self):
        units = single({"cluster_name": "c"}).expand({"cluster_name": "c"}, "dev")

        self.assertEqual(len(units), 1)
        self.assertEqual(units[0].name, "dev-single")
        self.assertIsNone(units[0].child)
        self.assertEqual(units[0].config, {"cluster_name": "c"})

    def test_children_inherit_config_with_override(self):
        resolved = {"charts": ["ingress", "dns"], "token": Sensitive("t")}
        units = bundle({}).expand(resolved, "dev")

        self.assertEqual([u.name for u in units], ["dev-bundle-ingress", "dev-bundle-dns"])
        self.assertEqual([u.child for u in units], ["ingress", "dns"])
        self.assertEqual(units[0].config["release"], "ingress")
        self.assertEqual(units[1].config["release"], "dns")
        self.assertEqual(units[0].config["token"], Sensitive("t"))
        self.assertNotIn("release", resolved)

    def test_expansion_is_idempotent(self):
        module = bundle({})
        resolved = {"charts": ["c", "a", "b"]}

        first = [u.name for u in module.expand(resolved, "prod")]
        second = [u.name for u in module.expand(resolved, "prod")]

        self.assertEqual(first, second)
        self.assertEqual(first, ["prod-bundle-c", "prod-bundle-a", "prod-bundle-b"])

    def test_empty_children_fall_back_to_single_unit(self):
        units = bundle({}).expand({"charts": []}, "dev")
        self.assertEqual([u.name for u in units], ["dev-bundle"])

    def test_mapping_children(self):
        definition = define_module("map", children=lambda cfg: {"x": {"n": 1}, "y": {"n": 2}})(Mock())
        units = definition({}).expand({}, "dev")

        self.assertEqual([(u.name, u.config["n"]) for u in units], [("dev-map-x", 1), ("dev-map-y", 2)])

    def test_duplicate_child_names_rejected(self):
        with self.assertRaises(ConfigurationError):
            bundle({}).expand({"charts": ["Ingress", "ingress"]}, "dev")

    def test_unit_name_sanitized(self):
        self.assertEqual(unit_name("dev", "cert_manager"), "dev-cert-manager")
        self.assertEqual(unit_name("Prod", "apps", "Grafana Agent"), "prod-apps-grafana-agent")
        self.assertEqual(unit_name("dev", "x", None), "dev-x")


if __name__ == "__main__":
    unittest.main()
