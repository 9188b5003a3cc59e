"""
Module definition system with dependency metadata

Modules declare the capabilities they provide and require; the resolver uses
that metadata to order them and to wire dependencies automatically.

Example:
    @define_module("cert-manager", provides=["cert-manager-crds"])
    def cert_manager(config, opts=None):
        return CertManager("cert-manager", config, opts)

    @define_module("ingress-nginx", requires=["cert-manager-crds"], provides=["ingress-controller"])
    def ingress_nginx(config, opts=None):
        return IngressNginx("ingress-nginx", config, opts)

    modules = [cert_manager({"version": "v1.15.0"}), ingress_nginx({})]

Factories without metadata (``legacy_module``) still run but take no part in
graph ordering; they are placed after every graph-aware module.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pulumi

from .errors import ConfigurationError
from .graph import ModuleDescriptor, resolve
from .merge import deep_merge
from .providers import ProviderRegistry, use_registry
from .secrets import SecretPipeline, as_outputs

Factory = Callable[..., Any]
ChildrenFn = Callable[[Mapping[str, Any]], Union[Mapping[str, Mapping[str, Any]], Sequence[Tuple[str, Mapping[str, Any]]]]]

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]+")


def unit_name(environment: str, module: str, child: Optional[str] = None) -> str:
    """Stack name for a module, or for one of its children: <env>-<module>[-<child>]"""
    parts = [environment, module] + ([child] if child else [])
    name = "-".join(parts).lower()
    return _INVALID_NAME_CHARS.sub("-", name).strip("-")


@dataclass(frozen=True)
class ExecutionUnitSpec:
    """One independently provisionable unit derived from a module"""

    name: str
    module: str
    config: Any
    child: Optional[str] = None


@dataclass(frozen=True)
class GraphAware:
    """Factory carrying a capability declaration"""

    descriptor: ModuleDescriptor
    factory: Factory
    needs: Tuple[str, ...] = ()
    children: Optional[ChildrenFn] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    def __call__(self, config: Optional[Mapping[str, Any]] = None) -> "Module":
        return Module(self, config)


@dataclass(frozen=True)
class Legacy:
    """Factory without capability metadata"""

    name: str
    factory: Factory
    needs: Tuple[str, ...] = ()
    children: Optional[ChildrenFn] = None

    def __call__(self, config: Optional[Mapping[str, Any]] = None) -> "Module":
        return Module(self, config)


Definition = Union[GraphAware, Legacy]


def define_module(name: str, provides: Iterable[str] = (), requires: Iterable[str] = (),
                  needs: Iterable[str] = (), children: Optional[ChildrenFn] = None):
    """
    Decorate a module factory with dependency metadata

    Args:
        name: Unique module name
        provides: Capabilities available once this module is applied
        requires: Capabilities that must be applied before this module
        needs: Provider tokens the module needs (checked before any backend call)
        children: Optional function splitting the module into child units;
            returns ordered (discriminator, config override) pairs

    Returns:
        Decorator producing a GraphAware definition
    """
    descriptor = ModuleDescriptor.of(name, provides, requires)

    def decorator(factory: Factory) -> GraphAware:
        return GraphAware(descriptor=descriptor, factory=factory, needs=tuple(needs), children=children)

    return decorator


def legacy_module(factory: Factory, name: Optional[str] = None, needs: Iterable[str] = (),
                  children: Optional[ChildrenFn] = None) -> Legacy:
    module_name = name or getattr(factory, "__name__", "")
    if not module_name or module_name == "<lambda>":
        raise ConfigurationError("Legacy modules need an explicit name")
    return Legacy(name=module_name.replace("_", "-"), factory=factory, needs=tuple(needs), children=children)


class Module:
    """A module definition bound to its user configuration"""

    def __init__(self, definition: Definition, config: Optional[Mapping[str, Any]] = None):
        self.definition = definition
        self.config = dict(config or {})

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def descriptor(self) -> Optional[ModuleDescriptor]:
        if isinstance(self.definition, GraphAware):
            return self.definition.descriptor
        return None

    @property
    def needs(self) -> Tuple[str, ...]:
        return self.definition.needs

    def expand(self, resolved_config: Any, environment: str) -> List[ExecutionUnitSpec]:
        """
        Split the module into execution units

        Without a children function the module is its own single unit. Each
        child inherits the resolved configuration merged with its override.
        The result depends only on the configuration, so repeated calls give
        the same ordered names.
        """
        children_fn = self.definition.children
        if children_fn is None:
            return [ExecutionUnitSpec(unit_name(environment, self.name), self.name, resolved_config)]

        children = children_fn(resolved_config)
        pairs = list(children.items()) if isinstance(children, Mapping) else list(children)
        if not pairs:
            return [ExecutionUnitSpec(unit_name(environment, self.name), self.name, resolved_config)]

        units: List[ExecutionUnitSpec] = []
        seen = set()
        for child, override in pairs:
            name = unit_name(environment, self.name, child)
            if name in seen:
                raise ConfigurationError(f"Module '{self.name}' declares child '{child}' twice")
            seen.add(name)
            units.append(ExecutionUnitSpec(name, self.name, deep_merge(resolved_config, override or {}), child))
        return units

    def build(self, config: Any, opts: Optional[pulumi.ResourceOptions] = None,
              registry: Optional[ProviderRegistry] = None):
        """Construct the module's resources; must run inside a Pulumi program"""
        if registry is None:
            return self.definition.factory(config, opts)
        with use_registry(registry):
            return self.definition.factory(config, opts)

    def __repr__(self) -> str:
        return f"Module({self.name!r})"


def split_modules(modules: Iterable[Module]) -> Tuple[List[Module], List[Module]]:
    graph_aware: List[Module] = []
    legacy: List[Module] = []
    for module in modules:
        (graph_aware if module.descriptor is not None else legacy).append(module)
    return graph_aware, legacy


def compose(modules: Iterable[Module], pipeline: Optional[SecretPipeline] = None,
            opts: Optional[pulumi.ResourceOptions] = None, strict: bool = False,
            registry: Optional[ProviderRegistry] = None) -> Dict[str, Any]:
    """
    Build several modules inside one Pulumi program

    Each module's secrets are resolved right before it is constructed, and the
    instances of the modules it requires are merged into its depends_on.

    Args:
        modules: Modules to build
        pipeline: Secret pipeline (one per run)
        opts: Base resource options for every module
        strict: Treat unresolved requirements as errors
        registry: Provider registry modules inject their providers from

    Returns:
        Dict of module name -> instance, in construction order
    """
    pipeline = pipeline or SecretPipeline()
    graph_aware, legacy = split_modules(modules)
    by_name = {module.name: module for module in graph_aware}
    resolution = resolve([m.descriptor for m in graph_aware], strict=strict)

    instances: Dict[str, Any] = {}
    for name in resolution.order:
        module = by_name[name]
        resolved, _ = pipeline.resolve(module.config, module=name)
        upstream = [instances[dep] for dep in resolution.upstream(name)]
        module_opts = opts
        if upstream:
            module_opts = pulumi.ResourceOptions.merge(opts, pulumi.ResourceOptions(depends_on=upstream))
        instances[name] = module.build(as_outputs(resolved), module_opts, registry)

    for module in legacy:
        if module.name in instances:
            raise ConfigurationError(f"Duplicate module name '{module.name}'")
        resolved, _ = pipeline.resolve(module.config, module=module.name)
        instances[module.name] = module.build(as_outputs(resolved), opts, registry)

    return instances
