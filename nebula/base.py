"""
Base component for Nebula modules
Injects default provider handles and gives access to other stacks' outputs
"""

from typing import Any, Dict, Iterable, List, Optional

import pulumi

from .module import unit_name
from .providers import K8S_DEFAULT, ProviderRegistry, default_registry


class BaseModule(pulumi.ComponentResource):
    """
    Component resource every module builds its resources under

    Subclasses set ``needs`` to the provider tokens they use. For each token
    without an explicitly supplied provider, the default handle is taken from
    the registry and materialized as a child provider; child resources created
    with ``self.child_opts()`` pick it up through the parent chain.

    Args:
        type_: Pulumi type token, e.g. "nebula:modules:Vpc"
        name: Resource name
        config: Module configuration (secret leaves are pulumi Outputs)
        opts: Resource options from the caller
        providers: Explicit providers by token; these win over defaults
        registry: Provider registry (defaults to the process-wide one)
    """

    needs: Iterable[str] = (K8S_DEFAULT,)

    def __init__(self, type_: str, name: str, config: Optional[Dict[str, Any]] = None,
                 opts: Optional[pulumi.ResourceOptions] = None,
                 providers: Optional[Dict[str, pulumi.ProviderResource]] = None,
                 registry: Optional[ProviderRegistry] = None):
        super().__init__(type_, name, None, opts)
        self.name = name
        self.config = dict(config or {})
        self.registry = registry or default_registry()
        self.providers: Dict[str, pulumi.ProviderResource] = dict(providers or {})
        self.outputs: Dict[str, Any] = {}
        self._stack_refs: Dict[str, pulumi.StackReference] = {}

        for token in self.needs:
            if token in self.providers:
                continue
            handle = self.registry.get(token)
            self.providers[token] = handle.materialize(name, pulumi.ResourceOptions(parent=self))

    def provider(self, token: str) -> pulumi.ProviderResource:
        return self.providers[token]

    def child_opts(self, **kwargs) -> pulumi.ResourceOptions:
        """Resource options parenting a resource under this module"""
        return pulumi.ResourceOptions(parent=self, providers=list(self.providers.values()), **kwargs)

    def get_stack_output(self, stack_name: str, output: str) -> pulumi.Output:
        """Read an output from another stack; None when it is missing"""
        return self._stack_reference(stack_name).get_output(output)

    def require_stack_output(self, stack_name: str, output: str) -> pulumi.Output:
        """Read an output from another stack; fails the program when it is missing"""
        return self._stack_reference(stack_name).require_output(output)

    @property
    def upstream_units(self) -> List[str]:
        """Units this stack waited for in the current run, as pushed to nebula:dependsOn"""
        return list(pulumi.Config("nebula").get_object("dependsOn") or [])

    def upstream_stack(self, module: str, child: Optional[str] = None) -> str:
        """Fully qualified name of a sibling module's stack in this environment"""
        environment = pulumi.Config("nebula").get("environment") or self.config.get("environment")
        if not environment:
            environment = pulumi.get_stack().split("-")[0]
        unit = unit_name(environment, module, child)
        waited_for = self.upstream_units
        if waited_for and unit not in waited_for:
            pulumi.log.warn(f"[{self.name}] Reading outputs of '{unit}', which this run did not wait for", resource=self)
        return f"{pulumi.get_organization()}/{pulumi.get_project()}/{unit}"

    def _stack_reference(self, stack_name: str) -> pulumi.StackReference:
        if stack_name not in self._stack_refs:
            ref_name = f"{self.name}-{stack_name.replace('/', '-')}-ref"
            self._stack_refs[stack_name] = pulumi.StackReference(
                ref_name, stack_name=stack_name, opts=pulumi.ResourceOptions(parent=self)
            )
        return self._stack_refs[stack_name]

    def finish(self, outputs: Dict[str, Any]) -> None:
        """Record and register the module's outputs"""
        self.outputs = outputs
        self.register_outputs(outputs)
