"""
Addons Module
Cluster add-ons as Helm releases; requires "cluster", provides "addons"

Each release becomes its own execution unit, so one failing chart does not
leave the others without a stack.
"""

import pulumi
from typing import Any, Dict, List, Mapping, Optional, Tuple

from nebula import K8S_DEFAULT, BaseModule, define_module

from .functions import METRICS_SERVER, create_namespace, deploy_release, release_namespaces

DEFAULTS = {
    "releases": {"metrics-server": METRICS_SERVER},
}


class AddonsModule(BaseModule):
    """
    Helm releases for cluster add-ons

    When ``release`` is set in the configuration only that release is
    deployed, with Helm creating its namespace; otherwise every release is
    deployed after its namespaces are created.
    """

    needs = (K8S_DEFAULT,)

    def __init__(self, name: str, config: Dict[str, Any], opts: Optional[pulumi.ResourceOptions] = None, **kwargs):
        super().__init__("nebula:modules:Addons", name, {**DEFAULTS, **config}, opts, **kwargs)

        releases: Mapping[str, Mapping[str, Any]] = self.config["releases"]
        selected = self.config.get("release")
        child = self.child_opts()

        deployed = {}
        if selected:
            spec = {**releases[selected], "create_namespace": True}
            deployed[selected] = deploy_release(name, selected, spec, child)
        else:
            namespaces = [create_namespace(name, ns, child) for ns in release_namespaces(releases)]
            release_opts = self.child_opts(depends_on=namespaces) if namespaces else child
            for release, spec in releases.items():
                deployed[release] = deploy_release(name, release, spec, release_opts)

        self.finish({
            "releases": {release: resource.status.apply(lambda s: s.status) for release, resource in deployed.items()},
        })


def release_children(config: Mapping[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
    """One child unit per release, in declaration order"""
    releases = config.get("releases") or DEFAULTS["releases"]
    return [(release, {"release": release}) for release in releases]


@define_module("addons", provides=["addons"], requires=["cluster"], needs=AddonsModule.needs,
               children=release_children)
def addons(config, opts=None):
    return AddonsModule("addons", config, opts)


__all__ = ["AddonsModule", "addons", "release_children"]
