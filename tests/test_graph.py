"""
Unit tests for the capability graph and module resolver
"""

import unittest
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nebula.errors import ConfigurationError, CyclicDependencyError
from nebula.graph import CapabilityGraph, ModuleDescriptor, resolve


def d(name, provides=(), requires=()):
    return ModuleDescriptor.of(name, provides, requires)


class TestResolver(unittest.TestCase):
    """Ordering and edge derivation"""

    def assert_respects_requirements(self, descriptors, order):
        position = {name: index for index, name in enumerate(order)}
        providers = {}
        for descriptor in descriptors:
            for capability in descriptor.provides:
                providers.setdefault(capability, []).append(descriptor.name)
        for descriptor in descriptors:
            for capability in descriptor.requires:
                for provider in providers.get(capability, []):
                    if provider != descriptor.name:
                        self.assertLess(position[provider], position[descriptor.name])

    def test_chain_end_to_end(self):
        descriptors = [
            d("C", requires=["app-ready"]),
            d("B", provides=["app-ready"], requires=["net-ready"]),
            d("A", provides=["net-ready"]),
        ]
        resolution = resolve(descriptors)

        self.assertEqual(resolution.order, ["A", "B", "C"])
        self.assertEqual(resolution.upstream("B"), ["A"])
        self.assertEqual(resolution.upstream("C"), ["B"])
        self.assertEqual(resolution.upstream("A"), [])
        self.assertEqual(resolution.unresolved, {})

    def test_missing_provider_is_soft(self):
        descriptors = [
            d("B", provides=["app-ready"], requires=["net-ready"]),
            d("C", requires=["app-ready"]),
        ]
        resolution = resolve(descriptors)

        self.assertEqual(resolution.order, ["B", "C"])
        self.assertEqual(resolution.unresolved, {"B": ["net-ready"]})
        self.assertEqual(resolution.upstream("B"), [])

    def test_strict_mode_rejects_missing_provider(self):
        with self.assertRaises(ConfigurationError) as ctx:
            resolve([d("B", requires=["net-ready"])], strict=True)
        self.assertIn("net-ready", str(ctx.exception))

    def test_one_edge_per_provider(self):
        descriptors = [
            d("dns-a", provides=["dns"]),
            d("dns-b", provides=["dns"]),
            d("app", requires=["dns"]),
        ]
        resolution = resolve(descriptors)

        self.assertEqual(sorted(resolution.upstream("app")), ["dns-a", "dns-b"])
        self.assertEqual(resolution.order[-1], "app")

    def test_cycle_raises_with_path(self):
        descriptors = [
            d("A", provides=["x"], requires=["y"]),
            d("B", provides=["y"], requires=["x"]),
        ]
        with self.assertRaises(CyclicDependencyError) as ctx:
            resolve(descriptors)

        cycle = ctx.exception.cycle
        self.assertEqual(cycle[0], cycle[-1])
        self.assertEqual(set(cycle), {"A", "B"})
        self.assertIn("->", str(ctx.exception))

    def test_cycle_inside_larger_graph_gives_no_partial_order(self):
        descriptors = [
            d("root", provides=["base"]),
            d("A", provides=["x"], requires=["y", "base"]),
            d("B", provides=["y"], requires=["x"]),
            d("leaf", requires=["base"]),
        ]
        with self.assertRaises(CyclicDependencyError):
            resolve(descriptors)

    def test_self_provided_requirement_adds_no_edge(self):
        resolution = resolve([d("solo", provides=["x"], requires=["x"])])
        self.assertEqual(resolution.order, ["solo"])
        self.assertEqual(resolution.upstream("solo"), [])

    def test_ties_keep_declaration_order(self):
        descriptors = [d("z"), d("a"), d("m", requires=["nothing"])]
        self.assertEqual(resolve(descriptors).order, ["z", "a", "m"])

    def test_order_respects_every_requirement(self):
        descriptors = [
            d("ingress", provides=["ingress-controller"], requires=["cert-manager-crds", "dns"]),
            d("apps", requires=["ingress-controller", "db"]),
            d("cert-manager", provides=["cert-manager-crds"], requires=["cluster"]),
            d("external-dns", provides=["dns"], requires=["cluster"]),
            d("cluster", provides=["cluster"]),
            d("db", provides=["db"], requires=["cluster"]),
        ]
        resolution = resolve(descriptors)

        self.assertEqual(len(resolution.order), len(descriptors))
        self.assert_respects_requirements(descriptors, resolution.order)

    def test_duplicate_names_rejected(self):
        with self.assertRaises(ConfigurationError):
            CapabilityGraph([d("a"), d("a")])

    def test_empty_name_rejected(self):
        with self.assertRaises(ConfigurationError):
            ModuleDescriptor.of("")

    def test_format_lists_edges_and_capabilities(self):
        graph = CapabilityGraph([d("A", provides=["net"]), d("B", requires=["net"])])
        text = graph.format()

        self.assertIn("B -> A", text)
        self.assertIn("A (no dependencies)", text)
        self.assertIn("net <- A", text)


if __name__ == "__main__":
    unittest.main()
