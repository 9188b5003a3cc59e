"""
EKS Module
Creates the EKS cluster and managed node group; requires "network", provides "cluster"
"""

import pulumi
from typing import Any, Dict, Optional

from nebula import CLOUD_DEFAULT, BaseModule, define_module

from .functions import (
    NODE_POLICIES,
    CLUSTER_POLICIES,
    build_kubeconfig,
    create_cluster,
    create_core_addons,
    create_node_group,
    create_role,
)

DEFAULTS = {
    "cluster_version": "1.30",
    "node_instance_types": ["t3.medium"],
    "node_desired_size": 2,
    "node_min_size": 1,
    "node_max_size": 3,
    "node_disk_size": 20,
    "capacity_type": "ON_DEMAND",
    "log_retention_days": 30,
}


class EksModule(BaseModule):
    """
    EKS control plane, node group and core add-ons

    Subnets and security groups come from the configuration when given,
    otherwise from the vpc module's stack in the same environment.
    """

    needs = (CLOUD_DEFAULT,)

    def __init__(self, name: str, config: Dict[str, Any], opts: Optional[pulumi.ResourceOptions] = None, **kwargs):
        super().__init__("nebula:modules:Eks", name, {**DEFAULTS, **config}, opts, **kwargs)

        cfg = self.config
        cluster_name = cfg["cluster_name"]
        tags = cfg.get("tags") or {}
        child = self.child_opts()

        subnet_ids = cfg.get("subnet_ids") or self.network_output("public_subnet_ids")
        cluster_sg = cfg.get("cluster_security_group_id") or self.network_output("cluster_security_group_id")

        cluster_role = create_role(f"{cluster_name}-cluster-role", "eks.amazonaws.com", CLUSTER_POLICIES, child, tags)
        node_role = create_role(f"{cluster_name}-ng-role", "ec2.amazonaws.com", NODE_POLICIES, child, tags)

        cluster = create_cluster(
            cluster_name,
            cfg["cluster_version"],
            cluster_role.arn,
            subnet_ids,
            cluster_sg,
            child,
            log_retention_days=cfg["log_retention_days"],
            kms_key_arn=cfg.get("kms_key_arn") or "",
            public_access_cidrs=cfg.get("public_access_cidrs"),
            tags=tags,
        )
        node_group = create_node_group(
            cluster_name,
            cluster["cluster"],
            node_role.arn,
            subnet_ids,
            child,
            instance_types=cfg["node_instance_types"],
            desired_size=cfg["node_desired_size"],
            min_size=cfg["node_min_size"],
            max_size=cfg["node_max_size"],
            disk_size=cfg["node_disk_size"],
            capacity_type=cfg["capacity_type"],
            tags=tags,
        )
        create_core_addons(cluster_name, cluster["cluster"], node_group, child, cfg.get("addons"), tags)

        region = cfg.get("region")
        kubeconfig = pulumi.Output.all(cluster["cluster_name"], cluster["cluster_endpoint"], cluster["cluster_ca_data"]).apply(
            lambda args: build_kubeconfig(args[0], args[1], args[2], region)
        )

        self.finish({
            "cluster_name": cluster["cluster_name"],
            "cluster_endpoint": cluster["cluster_endpoint"],
            "cluster_ca_data": cluster["cluster_ca_data"],
            "node_group_arn": node_group.arn,
            "kubeconfig": pulumi.Output.secret(kubeconfig),
        })

    def network_output(self, output: str) -> pulumi.Output:
        return self.require_stack_output(self.upstream_stack("vpc"), output)


@define_module("eks", provides=["cluster"], requires=["network"], needs=EksModule.needs)
def eks(config, opts=None):
    return EksModule("eks", config, opts)


__all__ = ["EksModule", "eks"]
