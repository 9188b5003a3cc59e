"""
Addons Module Functions
Helm releases and namespaces for cluster add-ons
"""

import pulumi
import pulumi_kubernetes as k8s
from typing import Any, Dict, List, Mapping, Optional

METRICS_SERVER = {
    "chart": "metrics-server",
    "repo": "https://kubernetes-sigs.github.io/metrics-server/",
    "namespace": "kube-system",
    "values": {
        "args": [
            "--cert-dir=/tmp",
            "--secure-port=4443",
            "--kubelet-preferred-address-types=InternalIP,ExternalIP,Hostname",
            "--kubelet-use-node-status-port",
            "--metric-resolution=15s",
        ],
    },
}


def create_namespace(name: str, namespace: str, opts: pulumi.ResourceOptions,
                     labels: Optional[Dict[str, str]] = None) -> k8s.core.v1.Namespace:
    """
    Create a namespace labelled as managed by pulumi

    Args:
        name: Resource name prefix
        namespace: Namespace to create
        opts: Resource options parenting the namespace
        labels: Extra labels

    Returns:
        Namespace resource
    """
    return k8s.core.v1.Namespace(
        f"{name}-{namespace}-namespace",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=namespace,
            labels={"name": namespace, "managed-by": "pulumi", **(labels or {})},
        ),
        opts=opts,
    )


def deploy_release(name: str, release: str, spec: Mapping[str, Any],
                   opts: pulumi.ResourceOptions) -> k8s.helm.v3.Release:
    """
    Deploy one Helm release

    Args:
        name: Resource name prefix
        release: Release name
        spec: chart, repo, version, namespace and values of the release
        opts: Resource options parenting the release

    Returns:
        Helm release resource
    """
    repo = spec.get("repo")
    return k8s.helm.v3.Release(
        f"{name}-{release}",
        name=release,
        chart=spec["chart"],
        version=spec.get("version"),
        namespace=spec.get("namespace", "default"),
        create_namespace=spec.get("create_namespace", False),
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(repo=repo) if repo else None,
        values=spec.get("values") or {},
        opts=opts,
    )


def release_namespaces(releases: Mapping[str, Mapping[str, Any]]) -> List[str]:
    """Namespaces releases install into, excluding kube-system and default, in first-seen order"""
    namespaces: List[str] = []
    for spec in releases.values():
        namespace = spec.get("namespace", "default")
        if namespace not in ("kube-system", "default") and namespace not in namespaces:
            namespaces.append(namespace)
    return namespaces
