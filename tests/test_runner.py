"""
Unit tests for the stack orchestrator
Uses an in-memory backend in place of Pulumi stacks
"""

import threading
import unittest
from unittest.mock import Mock
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nebula.automation import OperationResult
from nebula.config import Config
from nebula.errors import (
    BackendOperationError,
    BackendTimeoutError,
    ConfigurationError,
    CyclicDependencyError,
    ExpansionFailedError,
    MissingProviderConfigError,
    RunCancelledError,
    RunFailedError,
    SecretResolutionError,
)
from nebula.module import define_module, legacy_module
from nebula.providers import ProviderRegistry
from nebula.runner import Latch, ModuleState, Runner
from nebula.secrets import SecretCache, SecretPipeline, Sensitive


class FakeBackend:
    """Records calls; fails or blocks on chosen units"""

    def __init__(self, fail=(), block=(), on_execute=None):
        self.fail = set(fail)
        self.block = set(block)
        self.on_execute = on_execute
        self.calls = []
        self.units = {}
        self.cancelled = []
        self.release = threading.Event()
        self._lock = threading.Lock()

    def execute(self, unit, operation):
        with self._lock:
            self.calls.append((unit.name, operation))
            self.units[unit.name] = unit
        if self.on_execute:
            self.on_execute(unit)
        if unit.name in self.block:
            self.release.wait(5)
        if unit.name in self.fail:
            raise BackendOperationError(unit.name, operation, "boom", output="error: boom")
        return OperationResult(unit.name, operation, summary={"same": 1})

    def cancel(self, unit_name):
        self.cancelled.append(unit_name)
        self.release.set()

    def executed(self):
        return [name for name, _ in self.calls]


def make(name, provides=(), requires=(), children=None, needs=()):
    return define_module(name, provides=provides, requires=requires, needs=needs, children=children)(Mock())


def three_children(config):
    return [("first", {}), ("second", {}), ("third", {})]


def runner_for(backend, env=None, resolver=None):
    environ = {"NEBULA_ENV": "dev", "NEBULA_WORKERS": "3"}
    environ.update(env or {})
    config = Config(environ=environ)
    pipeline = SecretPipeline(resolver=resolver or Mock(return_value="resolved"), cache=SecretCache())
    return Runner(backend, config, pipeline=pipeline, registry=ProviderRegistry(config))


class TestOrdering(unittest.TestCase):

    def test_modules_run_in_capability_order_with_wait_dependencies(self):
        backend = FakeBackend()
        modules = [
            make("C", requires=["app-ready"])({}),
            make("B", provides=["app-ready"], requires=["net-ready"])({}),
            make("A", provides=["net-ready"])({}),
        ]

        report = runner_for(backend).run(modules, "apply")

        self.assertEqual(backend.executed(), ["dev-a", "dev-b", "dev-c"])
        self.assertEqual(backend.units["dev-a"].depends_on, [])
        self.assertEqual(backend.units["dev-b"].depends_on, ["dev-a"])
        self.assertEqual(backend.units["dev-c"].depends_on, ["dev-b"])
        self.assertEqual(report.succeeded, ["A", "B", "C"])
        self.assertTrue(report.ok)

    def test_state_machine_history(self):
        backend = FakeBackend()
        report = runner_for(backend).run([make("A")({})], "preview")

        self.assertEqual(report.runs["A"].history, [
            ModuleState.DECLARED,
            ModuleState.RESOLVING,
            ModuleState.CONFIGURING,
            ModuleState.EXPANDING,
            ModuleState.EXECUTING,
            ModuleState.SUCCEEDED,
        ])
        self.assertEqual(report.runs["A"].units, ["dev-a"])

    def test_destroy_runs_in_reverse_order(self):
        backend = FakeBackend()
        modules = [make("A", provides=["x"])({}), make("B", requires=["x"])({})]

        runner_for(backend).run(modules, "destroy")

        self.assertEqual(backend.executed(), ["dev-b", "dev-a"])
        self.assertEqual(backend.units["dev-a"].depends_on, ["dev-b"])

    def test_legacy_modules_run_last(self):
        backend = FakeBackend()
        legacy = legacy_module(Mock(), name="old")
        modules = [legacy({}), make("A")({})]

        report = runner_for(backend).run(modules, "apply")

        self.assertEqual(backend.executed(), ["dev-a", "dev-old"])
        self.assertEqual(report.order, ["A", "old"])

    def test_cycle_aborts_before_any_execution(self):
        backend = FakeBackend()
        modules = [make("A", provides=["x"], requires=["y"])({}), make("B", provides=["y"], requires=["x"])({})]

        with self.assertRaises(CyclicDependencyError):
            runner_for(backend).run(modules, "apply")
        self.assertEqual(backend.calls, [])

    def test_unknown_operation(self):
        with self.assertRaises(ConfigurationError):
            runner_for(FakeBackend()).run([], "deploy")

    def test_unit_name_clash_rejected_before_any_unit_runs(self):
        backend = FakeBackend()
        modules = [make("a-b")({}), make("a", children=lambda cfg: [("b", {})])({})]
        runner = runner_for(backend)

        with self.assertRaises(ConfigurationError) as ctx:
            runner.run(modules, "apply")

        self.assertIn("dev-a-b", str(ctx.exception))
        self.assertEqual(backend.calls, [])

    def test_unit_name_clash_checked_for_destroy_too(self):
        backend = FakeBackend()
        modules = [make("a", children=lambda cfg: [("b", {})])({}), make("a-b")({})]

        with self.assertRaises(ConfigurationError):
            runner_for(backend).run(modules, "destroy")
        self.assertEqual(backend.calls, [])


class TestChildUnits(unittest.TestCase):
    """Fail-fast for mutating operations, continue for read-only ones"""

    def test_apply_stops_at_failed_child(self):
        backend = FakeBackend(fail=["dev-bundle-second"])
        runner = runner_for(backend)

        with self.assertRaises(BackendOperationError) as ctx:
            runner.run([make("bundle", children=three_children)({})], "apply")

        self.assertEqual(ctx.exception.unit, "dev-bundle-second")
        self.assertEqual(backend.executed(), ["dev-bundle-first", "dev-bundle-second"])
        self.assertEqual(runner.report.runs["bundle"].state, ModuleState.FAILED)

    def test_destroy_stops_at_failed_child(self):
        backend = FakeBackend(fail=["dev-bundle-second"])

        with self.assertRaises(BackendOperationError):
            runner_for(backend).run([make("bundle", children=three_children)({})], "destroy")
        self.assertNotIn("dev-bundle-third", backend.executed())

    def test_preview_attempts_every_child(self):
        backend = FakeBackend(fail=["dev-bundle-second"])

        with self.assertRaises(ExpansionFailedError) as ctx:
            runner_for(backend).run([make("bundle", children=three_children)({})], "preview")

        self.assertEqual(sorted(backend.executed()),
                         ["dev-bundle-first", "dev-bundle-second", "dev-bundle-third"])
        self.assertEqual([unit for unit, _ in ctx.exception.failures], ["dev-bundle-second"])
        self.assertIn("dev-bundle-second", str(ctx.exception))

    def test_refresh_attempts_every_child(self):
        backend = FakeBackend(fail=["dev-bundle-first", "dev-bundle-third"])

        with self.assertRaises(ExpansionFailedError) as ctx:
            runner_for(backend).run([make("bundle", children=three_children)({})], "refresh")

        self.assertEqual(len(backend.calls), 3)
        self.assertEqual([unit for unit, _ in ctx.exception.failures], ["dev-bundle-first", "dev-bundle-third"])

    def test_preview_results_keep_expansion_order(self):
        backend = FakeBackend()
        report = runner_for(backend).run([make("bundle", children=three_children)({})], "preview")

        results = report.runs["bundle"].results
        self.assertEqual([r.unit for r in results], ["dev-bundle-first", "dev-bundle-second", "dev-bundle-third"])


class TestFailurePolicy(unittest.TestCase):

    def test_first_failure_halts_run(self):
        backend = FakeBackend(fail=["dev-a"])
        modules = [make("A", provides=["x"])({}), make("B")({}), make("C", requires=["x"])({})]
        runner = runner_for(backend)

        with self.assertRaises(BackendOperationError):
            runner.run(modules, "apply")

        self.assertEqual(backend.executed(), ["dev-a"])
        self.assertEqual(runner.report.runs["B"].state, ModuleState.DECLARED)

    def test_keep_going_skips_dependents_only(self):
        backend = FakeBackend(fail=["dev-a"])
        modules = [make("A", provides=["x"])({}), make("B")({}), make("C", requires=["x"])({})]

        report = runner_for(backend).run(modules, "apply", keep_going=True)

        self.assertEqual(backend.executed(), ["dev-a", "dev-b"])
        self.assertEqual(report.failed, ["A"])
        self.assertEqual(report.succeeded, ["B"])
        self.assertEqual(report.skipped, ["C"])
        with self.assertRaises(RunFailedError) as ctx:
            report.raise_for_failures()
        self.assertEqual(ctx.exception.skipped, ["C"])

    def test_secret_failure_names_module_and_skips_backend(self):
        backend = FakeBackend()
        resolver = Mock(side_effect=SecretResolutionError("ref+env://PW", "not set"))
        module = make("db")({"password": "ref+env://PW"})

        with self.assertRaises(SecretResolutionError) as ctx:
            runner_for(backend, resolver=resolver).run([module], "apply")

        self.assertEqual(ctx.exception.module, "db")
        self.assertEqual(backend.calls, [])

    def test_missing_provider_config_before_backend_call(self):
        backend = FakeBackend()
        module = make("vpc", needs=["cloud-default"])({})

        with self.assertRaises(MissingProviderConfigError):
            runner_for(backend).run([module], "apply")
        self.assertEqual(backend.calls, [])

    def test_resolved_secrets_reach_units_marked(self):
        backend = FakeBackend()
        module = make("db")({"password": "ref+env://PW", "user": "app"})

        runner_for(backend).run([module], "apply")

        config = backend.units["dev-db"].config
        self.assertEqual(config["password"], Sensitive("resolved"))
        self.assertEqual(config["user"], "app")


class TestCancellationAndTimeouts(unittest.TestCase):

    def test_cancel_stops_before_next_module(self):
        runner = None

        def cancel_on_first(unit):
            if unit.name == "dev-a":
                runner.cancel()

        backend = FakeBackend(on_execute=cancel_on_first)
        runner = runner_for(backend)
        modules = [make("A", provides=["x"])({}), make("B", requires=["x"])({})]

        with self.assertRaises(RunCancelledError) as ctx:
            runner.run(modules, "apply")

        self.assertEqual(ctx.exception.next_module, "B")
        self.assertEqual(backend.executed(), ["dev-a"])
        self.assertEqual(runner.report.runs["A"].state, ModuleState.SUCCEEDED)
        self.assertEqual(runner.report.runs["B"].state, ModuleState.DECLARED)

    def test_timeout_cancels_backend_operation(self):
        backend = FakeBackend(block=["dev-slow"])
        runner = runner_for(backend, env={"NEBULA_TIMEOUT_APPLY": "0.1"})

        with self.assertRaises(BackendTimeoutError) as ctx:
            runner.run([make("slow")({})], "apply")

        self.assertEqual(ctx.exception.unit, "dev-slow")
        self.assertEqual(ctx.exception.operation, "apply")
        self.assertEqual(backend.cancelled, ["dev-slow"])

    def test_latch_runs_once(self):
        latch = Latch()
        initializer = Mock()

        self.assertTrue(latch.run_once(initializer))
        self.assertFalse(latch.run_once(initializer))
        initializer.assert_called_once()
        self.assertTrue(latch.done)

    def test_latch_retries_after_failure(self):
        latch = Latch()
        initializer = Mock(side_effect=[RuntimeError("no vals"), None])

        with self.assertRaises(RuntimeError):
            latch.run_once(initializer)
        self.assertTrue(latch.run_once(initializer))


if __name__ == "__main__":
    unittest.main()
