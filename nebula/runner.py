"""
Stack orchestrator
Runs an operation across an environment's modules in dependency order

Each module goes through:
    Declared -> Resolving -> Configuring -> Expanding -> Executing -> Succeeded | Failed

Modules run one at a time in resolver order (reversed for destroy). Child units
of one module run concurrently for preview/refresh and strictly in order, fail
fast, for apply/destroy.
"""

import logging
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pulumi

from .automation import OPERATIONS, READ_ONLY_OPERATIONS, AutomationBackend, OperationResult, UnitRequest
from .config import Config, get_config
from .errors import (
    BackendTimeoutError,
    ConfigurationError,
    ExpansionFailedError,
    RunCancelledError,
    RunFailedError,
)
from .graph import Resolution, resolve
from .module import ExecutionUnitSpec, Module, split_modules
from .providers import ProviderRegistry, default_registry
from .secrets import SecretPipeline, ValsResolver, as_outputs, default_cache, default_resolver

logger = logging.getLogger(__name__)


class ModuleState(Enum):
    DECLARED = "declared"
    RESOLVING = "resolving"
    CONFIGURING = "configuring"
    EXPANDING = "expanding"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = (ModuleState.SUCCEEDED, ModuleState.FAILED, ModuleState.SKIPPED)


@dataclass
class ModuleRun:
    """Progress of one module through a run"""

    name: str
    state: ModuleState = ModuleState.DECLARED
    history: List[ModuleState] = field(default_factory=lambda: [ModuleState.DECLARED])
    units: List[str] = field(default_factory=list)
    results: List[OperationResult] = field(default_factory=list)
    error: Optional[Exception] = None

    def transition(self, state: ModuleState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Module '{self.name}' already finished as {self.state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, error: Exception) -> None:
        self.error = error
        self.transition(ModuleState.FAILED)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class RunReport:
    operation: str
    order: List[str]
    runs: Dict[str, ModuleRun] = field(default_factory=dict)
    unresolved: Dict[str, List[str]] = field(default_factory=dict)

    def _in_state(self, state: ModuleState) -> List[str]:
        return [name for name in self.order if self.runs[name].state == state]

    @property
    def succeeded(self) -> List[str]:
        return self._in_state(ModuleState.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return self._in_state(ModuleState.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._in_state(ModuleState.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def raise_for_failures(self) -> None:
        if not self.ok:
            raise RunFailedError(self.failed, self.skipped)


class Latch:
    """Runs an initializer once; a failed initializer may be retried"""

    def __init__(self):
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def run_once(self, initializer: Callable[[], None]) -> bool:
        with self._lock:
            if self._done:
                return False
            initializer()
            self._done = True
            return True


class Runner:
    """
    Drives an operation over a set of modules

    Args:
        backend: Automation backend executing units
        config: Environment configuration
        pipeline: Secret pipeline shared by every module of the run
        registry: Provider registry checked before any backend call
    """

    def __init__(self, backend: AutomationBackend, config: Optional[Config] = None,
                 pipeline: Optional[SecretPipeline] = None, registry: Optional[ProviderRegistry] = None):
        self.backend = backend
        self.config = config or get_config()
        self.pipeline = pipeline or SecretPipeline(
            resolver=default_resolver(),
            cache=default_cache(),
            strict=self.config.secrets_strict,
            debug=self.config.debug,
        )
        self.registry = registry or default_registry()
        if self.registry.config is None:
            self.registry.config = self.config
        self.report: Optional[RunReport] = None
        self._initialized = Latch()
        self._cancelled = threading.Event()
        self._inflight: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _initialize(self) -> None:
        resolver = getattr(self.pipeline.resolver, "default", None)
        if isinstance(resolver, ValsResolver) and not resolver.available():
            logger.warning(f"[Runner] '{resolver.command}' not found on PATH; only ref+env:// references will resolve")
        if self.config.debug:
            logger.debug(f"[Runner] Provider tokens: {', '.join(self.registry.tokens())}")
            logger.debug(f"[Runner] Project '{self.config.project}', environment '{self.config.environment}'")

    # Cancellation

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop before the next module; in-flight units are asked to cancel"""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        threading.Thread(target=self._cancel_inflight, name="nebula-cancel", daemon=True).start()

    def _cancel_inflight(self) -> None:
        with self._lock:
            units = list(self._inflight)
        for unit in units:
            self.backend.cancel(unit)

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to cancel(); must be called from the main thread"""

        def handler(signum, frame):
            logger.warning(f"[Runner] Received {signal.Signals(signum).name}, stopping after the current module")
            self.cancel()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)

    # Running

    def run(self, modules: Iterable[Module], operation: str, keep_going: bool = False) -> RunReport:
        """
        Run an operation over an environment's modules

        Args:
            modules: Modules declared for the environment
            operation: One of preview, apply, destroy, refresh
            keep_going: Record a module failure and continue with modules that do not depend on it

        Returns:
            RunReport with the terminal state of every module

        Raises:
            CyclicDependencyError: Before any module runs
            RunCancelledError: When cancelled; finished modules keep their state
            NebulaError: The first module failure, unless keep_going is set
        """
        if operation not in OPERATIONS:
            raise ConfigurationError(f"Unknown operation '{operation}', expected one of {', '.join(OPERATIONS)}")

        self._initialized.run_once(self._initialize)
        self._cancelled.clear()

        modules = list(modules)
        graph_aware, legacy = split_modules(modules)
        resolution = resolve(
            [module.descriptor for module in graph_aware],
            strict=self.config.strict_requires,
            debug=self.config.debug,
        )

        by_name: Dict[str, Module] = {module.name: module for module in graph_aware}
        for module in legacy:
            if module.name in by_name:
                raise ConfigurationError(f"Duplicate module name '{module.name}'")
            by_name[module.name] = module

        order = resolution.order + [module.name for module in legacy]
        if operation == "destroy":
            order = list(reversed(order))

        claimed = self._claim_units(order, by_name)
        report = RunReport(operation, order, {name: ModuleRun(name) for name in order}, resolution.unresolved)
        self.report = report

        logger.info(f"[Runner] {operation} {self.config.environment}: {' -> '.join(order)}")

        for name in order:
            if self.cancelled:
                raise RunCancelledError(name)

            run = report.runs[name]
            waits_for = self._waits_for(name, resolution, operation)
            blocked = [dep for dep in waits_for if report.runs[dep].state in (ModuleState.FAILED, ModuleState.SKIPPED)]
            if blocked:
                logger.warning(f"[Runner] Skipping '{name}': upstream {', '.join(blocked)} did not succeed")
                run.transition(ModuleState.SKIPPED)
                continue

            depends_on = [unit for dep in waits_for for unit in report.runs[dep].units]
            try:
                self._run_module(by_name[name], run, operation, depends_on, claimed)
            except RunCancelledError:
                run.fail(RunCancelledError(name))
                raise
            except Exception as exc:
                run.fail(exc)
                logger.error(f"[Runner] {name}: {exc}")
                if not keep_going:
                    raise

        return report

    def _claim_units(self, order: List[str], by_name: Dict[str, Module]) -> Dict[str, Tuple[str, Optional[str]]]:
        """
        Stack names of every module, checked for clashes before any backend call

        Child discriminators come from the declared configuration and do not
        depend on secret values, so the unresolved configuration is enough.
        """
        claimed: Dict[str, Tuple[str, Optional[str]]] = {}
        for name in order:
            module = by_name[name]
            for spec in module.expand(module.config, self.config.environment):
                self._claim(claimed, spec)
        return claimed

    @staticmethod
    def _claim(claimed: Dict[str, Tuple[str, Optional[str]]], spec: ExecutionUnitSpec) -> None:
        owner = claimed.get(spec.name)
        if owner is not None and owner != (spec.module, spec.child):
            raise ConfigurationError(f"Unit name '{spec.name}' is used by both '{owner[0]}' and '{spec.module}'")
        claimed[spec.name] = (spec.module, spec.child)

    def _waits_for(self, name: str, resolution: Resolution, operation: str) -> List[str]:
        """Modules that must finish before this one: providers, or dependents when destroying"""
        if operation == "destroy":
            return [other for other, upstream in resolution.edges.items() if name in upstream]
        return resolution.upstream(name)

    def _run_module(self, module: Module, run: ModuleRun, operation: str, depends_on: List[str],
                    claimed: Dict[str, Tuple[str, Optional[str]]]) -> None:
        run.transition(ModuleState.RESOLVING)
        resolved, _ = self.pipeline.resolve(module.config, module=module.name)

        run.transition(ModuleState.CONFIGURING)
        for token in module.needs:
            self.registry.get(token)

        run.transition(ModuleState.EXPANDING)
        specs = module.expand(resolved, self.config.environment)
        for spec in specs:
            self._claim(claimed, spec)
        run.units = [spec.name for spec in specs]

        requests = [
            UnitRequest(spec.name, spec.module, self._program(module, spec), spec.config, spec.child, depends_on)
            for spec in specs
        ]

        run.transition(ModuleState.EXECUTING)
        if operation in READ_ONLY_OPERATIONS:
            run.results = self._execute_read_only(requests, operation)
        else:
            run.results = self._execute_sequential(requests, operation)

        for result in run.results:
            logger.info(f"[Runner] {operation} {result.unit}: {self._format_summary(result.summary)}")
        run.transition(ModuleState.SUCCEEDED)

    @staticmethod
    def _format_summary(summary: Dict[str, int]) -> str:
        if not summary:
            return "no changes"
        return ", ".join(f"{op}={count}" for op, count in sorted(summary.items()))

    def _program(self, module: Module, spec: ExecutionUnitSpec) -> Callable[[], None]:
        registry = self.registry

        def program() -> None:
            instance = module.build(as_outputs(spec.config), registry=registry)
            for key, value in (getattr(instance, "outputs", None) or {}).items():
                pulumi.export(key, value)

        return program

    def _execute_sequential(self, requests: List[UnitRequest], operation: str) -> List[OperationResult]:
        results: List[OperationResult] = []
        for index, request in enumerate(requests):
            if index and self.cancelled:
                raise RunCancelledError(request.name)
            results.append(self._call(request, operation))
        return results

    def _execute_read_only(self, requests: List[UnitRequest], operation: str) -> List[OperationResult]:
        if len(requests) == 1:
            return [self._call(requests[0], operation)]

        workers = max(1, min(self.config.workers, len(requests)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="nebula-unit") as executor:
            futures = [(request, executor.submit(self._call, request, operation)) for request in requests]

            results: List[OperationResult] = []
            failures: List[Tuple[str, Exception]] = []
            for request, future in futures:
                try:
                    results.append(future.result())
                except Exception as exc:
                    logger.error(f"[Runner] {operation} {request.name}: {exc}")
                    failures.append((request.name, exc))

        if failures:
            raise ExpansionFailedError(operation, failures)
        return results

    def _call(self, request: UnitRequest, operation: str) -> OperationResult:
        """Run one backend operation under the operation's timeout"""
        timeout = self.config.timeout_for(operation)
        future: Future = Future()

        def target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.backend.execute(request, operation))
            except BaseException as exc:
                future.set_exception(exc)

        with self._lock:
            self._inflight[request.name] = self._inflight.get(request.name, 0) + 1
        try:
            threading.Thread(target=target, name=f"nebula-{request.name}", daemon=True).start()
            try:
                return future.result(timeout=timeout)
            except FuturesTimeout:
                self.backend.cancel(request.name)
                raise BackendTimeoutError(request.name, operation, timeout)
        finally:
            with self._lock:
                self._inflight[request.name] -= 1
                if not self._inflight[request.name]:
                    del self._inflight[request.name]
