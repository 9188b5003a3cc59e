"""
Nebula - capability-ordered Pulumi module orchestration
"""

from .automation import OperationResult, PulumiBackend, UnitRequest, flatten_config
from .base import BaseModule
from .config import Config, get_config
from .errors import (
    BackendOperationError,
    BackendTimeoutError,
    ConfigurationError,
    CyclicDependencyError,
    ExpansionFailedError,
    MissingProviderConfigError,
    NebulaError,
    RunCancelledError,
    RunFailedError,
    SecretResolutionError,
)
from .graph import CapabilityGraph, ModuleDescriptor, Resolution, resolve
from .merge import deep_merge
from .module import ExecutionUnitSpec, GraphAware, Legacy, Module, compose, define_module, legacy_module, unit_name
from .providers import CLOUD_DEFAULT, K8S_DEFAULT, ProviderRegistry, default_registry, reset_providers, use_registry
from .runner import ModuleRun, ModuleState, RunReport, Runner
from .secrets import SecretPipeline, Sensitive, as_outputs, has_unresolved_refs, redact, unwrap

__all__ = [
    "BackendOperationError",
    "BackendTimeoutError",
    "BaseModule",
    "CLOUD_DEFAULT",
    "CapabilityGraph",
    "Config",
    "ConfigurationError",
    "CyclicDependencyError",
    "ExecutionUnitSpec",
    "ExpansionFailedError",
    "GraphAware",
    "K8S_DEFAULT",
    "Legacy",
    "MissingProviderConfigError",
    "Module",
    "ModuleDescriptor",
    "ModuleRun",
    "ModuleState",
    "NebulaError",
    "OperationResult",
    "ProviderRegistry",
    "PulumiBackend",
    "Resolution",
    "RunCancelledError",
    "RunFailedError",
    "RunReport",
    "Runner",
    "SecretPipeline",
    "SecretResolutionError",
    "Sensitive",
    "UnitRequest",
    "as_outputs",
    "compose",
    "deep_merge",
    "default_registry",
    "define_module",
    "flatten_config",
    "get_config",
    "has_unresolved_refs",
    "legacy_module",
    "redact",
    "reset_providers",
    "resolve",
    "unit_name",
    "unwrap",
    "use_registry",
]
