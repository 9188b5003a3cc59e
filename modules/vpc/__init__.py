"""
VPC Module
Network for an EKS cluster; provides the "network" capability
"""

import pulumi
import pulumi_aws as aws
from typing import Any, Dict, Optional

from nebula import CLOUD_DEFAULT, BaseModule, define_module

from .functions import create_public_subnets, create_security_groups, create_vpc

DEFAULTS = {
    "vpc_cidr": "10.0.0.0/16",
    "public_subnet_cidrs": ["10.0.1.0/24", "10.0.2.0/24"],
}


class VpcModule(BaseModule):
    """VPC, public subnets and EKS security groups"""

    needs = (CLOUD_DEFAULT,)

    def __init__(self, name: str, config: Dict[str, Any], opts: Optional[pulumi.ResourceOptions] = None, **kwargs):
        super().__init__("nebula:modules:Vpc", name, {**DEFAULTS, **config}, opts, **kwargs)

        cluster_name = self.config["cluster_name"]
        tags = self.config.get("tags") or {}
        child = self.child_opts()

        zones = self.config.get("availability_zones")
        if not zones:
            zones = aws.get_availability_zones_output(
                state="available",
                opts=pulumi.InvokeOptions(provider=self.provider(CLOUD_DEFAULT)),
            ).names

        vpc = create_vpc(cluster_name, self.config["vpc_cidr"], child, tags)
        subnets = create_public_subnets(
            cluster_name,
            vpc["vpc_id"],
            vpc["igw_id"],
            self.config["public_subnet_cidrs"],
            zones,
            child,
            tags,
        )
        groups = create_security_groups(cluster_name, vpc["vpc_id"], child, tags)

        self.finish({
            "vpc_id": vpc["vpc_id"],
            "vpc_cidr_block": vpc["vpc_cidr_block"],
            "public_subnet_ids": subnets["subnet_ids"],
            "cluster_security_group_id": groups["cluster_security_group_id"],
            "node_security_group_id": groups["node_security_group_id"],
        })


@define_module("vpc", provides=["network"], needs=VpcModule.needs)
def vpc(config, opts=None):
    return VpcModule("vpc", config, opts)


__all__ = ["VpcModule", "vpc"]
