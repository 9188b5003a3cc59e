"""
Provider Registry - lazily builds and caches execution-target handles

A handle describes how to reach an execution target (a cluster, a cloud
account). Handles are cached for the process; the Pulumi provider resource
itself is materialized from the handle inside each program run.
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

import pulumi
import pulumi_aws as aws
import pulumi_kubernetes as k8s

from .cache import OnceCache
from .config import Config, get_config
from .errors import ConfigurationError, MissingProviderConfigError

logger = logging.getLogger(__name__)

K8S_DEFAULT = "k8s-default"
CLOUD_DEFAULT = "cloud-default"


@dataclass(frozen=True)
class KubernetesHandle:
    """Cluster access: either a kubeconfig, an infrastructure stack to read it from, or a render directory"""

    token: str
    render_dir: Optional[str] = None
    kubeconfig: Optional[str] = None
    infra_stack: Optional[str] = None

    @property
    def render_mode(self) -> bool:
        return self.render_dir is not None

    def infra_stack_name(self) -> str:
        """Convention: org/<project>/env -> org/infrastructure/env"""
        if self.infra_stack:
            return self.infra_stack
        return f"{pulumi.get_organization()}/infrastructure/{pulumi.get_stack()}"

    def materialize(self, name: str, opts: Optional[pulumi.ResourceOptions] = None) -> k8s.Provider:
        if self.render_mode:
            pulumi.log.info(f"[Providers] Render mode enabled, outputting manifests to: {self.render_dir}")
            return k8s.Provider(
                f"{name}-k8s",
                render_yaml_to_directory=self.render_dir,
                opts=opts,
            )

        kubeconfig = self.kubeconfig
        if kubeconfig is None:
            stack_ref = pulumi.StackReference(f"{name}-infra-ref", stack_name=self.infra_stack_name(), opts=opts)
            kubeconfig = stack_ref.get_output("kubeconfig")

        return k8s.Provider(
            f"{name}-k8s",
            kubeconfig=kubeconfig,
            delete_unreachable=True,
            skip_update_unreachable=True,
            opts=opts,
        )


@dataclass(frozen=True)
class AwsHandle:
    """Cloud account access"""

    token: str
    region: str
    account_id: str
    profile: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict, hash=False)

    def materialize(self, name: str, opts: Optional[pulumi.ResourceOptions] = None) -> aws.Provider:
        return aws.Provider(
            f"{name}-aws",
            region=self.region,
            profile=self.profile,
            allowed_account_ids=[self.account_id],
            default_tags=aws.ProviderDefaultTagsArgs(tags=self.tags) if self.tags else None,
            opts=opts,
        )


def _read_kubeconfig(path: str) -> str:
    with open(path, "r") as f:
        return f.read()


def create_kubernetes_handle(config: Config, token: str = K8S_DEFAULT) -> KubernetesHandle:
    """
    Build the default cluster handle

    Args:
        config: Environment configuration
        token: Token the handle is cached under

    Returns:
        KubernetesHandle for render mode, an explicit kubeconfig, or the infrastructure stack
    """
    if config.render_mode:
        return KubernetesHandle(token=token, render_dir=config.render_dir)
    if config.kubeconfig:
        return KubernetesHandle(token=token, kubeconfig=_read_kubeconfig(config.kubeconfig))
    return KubernetesHandle(token=token, infra_stack=config.infra_stack)


def create_aws_handle(config: Config, token: str = CLOUD_DEFAULT) -> AwsHandle:
    """
    Build the default cloud-account handle

    Raises:
        MissingProviderConfigError: If region or account identity is not configured
    """
    if not config.aws_region:
        raise MissingProviderConfigError(token, "aws_region", "Set NEBULA_AWS_REGION or AWS_REGION")
    if not config.aws_account_id:
        raise MissingProviderConfigError(token, "aws_account_id", "Set NEBULA_AWS_ACCOUNT_ID")
    return AwsHandle(
        token=token,
        region=config.aws_region,
        account_id=config.aws_account_id,
        profile=config.aws_profile,
        tags=config.common_tags,
    )


HandleFactory = Callable[[Config, str], object]


class ProviderRegistry:
    """
    Registry of provider handles keyed by capability token

    Usage:
        registry = ProviderRegistry(config)
        handle = registry.get("k8s-default")
        provider = handle.materialize("cert-manager", opts)
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config
        self._factories: Dict[str, HandleFactory] = {
            K8S_DEFAULT: create_kubernetes_handle,
            CLOUD_DEFAULT: create_aws_handle,
        }
        self._handles: OnceCache[object] = OnceCache()

    def register(self, token: str, factory: HandleFactory) -> None:
        self._factories[token] = factory

    def tokens(self) -> List[str]:
        return list(self._factories)

    def get(self, token: str):
        factory = self._factories.get(token)
        if factory is None:
            raise ConfigurationError(f"No provider factory registered for '{token}'")

        def create():
            handle = factory(self.config or get_config(), token)
            if self.config is not None and self.config.debug:
                logger.debug(f"[Providers] Created handle for '{token}'")
            return handle

        return self._handles.get_or_create(token, create)

    def is_cached(self, token: str) -> bool:
        return token in self._handles

    def reset(self) -> None:
        """Clear cached handles (used by tests)"""
        self._handles.clear()


_default_registry = ProviderRegistry()

# Registry of the module build running in the current context
_active_registry: ContextVar[Optional[ProviderRegistry]] = ContextVar("nebula_active_registry", default=None)


def default_registry() -> ProviderRegistry:
    """Registry used by BaseModule when none is passed: the active one, else the process-wide one"""
    active = _active_registry.get()
    return active if active is not None else _default_registry


@contextmanager
def use_registry(registry: ProviderRegistry) -> Iterator[ProviderRegistry]:
    """Make a registry the default for module builds in this context"""
    token = _active_registry.set(registry)
    try:
        yield registry
    finally:
        _active_registry.reset(token)


def reset_providers() -> None:
    _default_registry.reset()
