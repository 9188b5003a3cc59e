"""
VPC Module Functions
Network resources for an EKS cluster: VPC, public subnets, routing, security groups
"""

import pulumi
import pulumi_aws as aws
from typing import Any, Dict, List, Optional


def _tags(base: Dict[str, str], name: str, **extra: str) -> Dict[str, str]:
    return {**base, "Name": name, "Module": "vpc", **extra}


def create_vpc(name: str, cidr: str, opts: pulumi.ResourceOptions,
               tags: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Create the VPC and its internet gateway

    Args:
        name: Resource name prefix (the cluster name)
        cidr: VPC CIDR block
        opts: Resource options parenting the resources
        tags: Additional tags

    Returns:
        Dict with vpc, igw and their ids
    """
    tags = tags or {}

    vpc = aws.ec2.Vpc(
        f"{name}-vpc",
        cidr_block=cidr,
        enable_dns_hostnames=True,
        enable_dns_support=True,
        tags=_tags(tags, f"{name}-vpc", **{f"kubernetes.io/cluster/{name}": "shared"}),
        opts=opts,
    )

    igw = aws.ec2.InternetGateway(
        f"{name}-igw",
        vpc_id=vpc.id,
        tags=_tags(tags, f"{name}-igw"),
        opts=opts,
    )

    return {"vpc": vpc, "vpc_id": vpc.id, "vpc_cidr_block": vpc.cidr_block, "igw": igw, "igw_id": igw.id}


def create_public_subnets(name: str, vpc_id: pulumi.Input[str], igw_id: pulumi.Input[str],
                          subnet_cidrs: List[str], availability_zones: pulumi.Input[List[str]],
                          opts: pulumi.ResourceOptions, tags: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Create public subnets routed through the internet gateway

    Subnets are tagged for external load balancers. The availability zone of
    subnet i is availability_zones[i].
    """
    tags = tags or {}

    route_table = aws.ec2.RouteTable(
        f"{name}-public-rt",
        vpc_id=vpc_id,
        routes=[aws.ec2.RouteTableRouteArgs(cidr_block="0.0.0.0/0", gateway_id=igw_id)],
        tags=_tags(tags, f"{name}-public-rt"),
        opts=opts,
    )

    subnets = []
    for index, cidr in enumerate(subnet_cidrs):
        subnet = aws.ec2.Subnet(
            f"{name}-public-subnet-{index + 1}",
            vpc_id=vpc_id,
            cidr_block=cidr,
            availability_zone=pulumi.Output.from_input(availability_zones).apply(lambda zones, i=index: zones[i]),
            map_public_ip_on_launch=True,
            tags=_tags(
                tags,
                f"{name}-public-subnet-{index + 1}",
                Type="public",
                **{f"kubernetes.io/cluster/{name}": "shared", "kubernetes.io/role/elb": "1"},
            ),
            opts=opts,
        )
        aws.ec2.RouteTableAssociation(
            f"{name}-public-rta-{index + 1}",
            subnet_id=subnet.id,
            route_table_id=route_table.id,
            opts=opts,
        )
        subnets.append(subnet)

    return {
        "route_table": route_table,
        "subnets": subnets,
        "subnet_ids": [subnet.id for subnet in subnets],
    }


def _rule(name: str, security_group_id, opts: pulumi.ResourceOptions, rule_type: str,
          from_port: int, to_port: int, protocol: str, **kwargs) -> aws.ec2.SecurityGroupRule:
    return aws.ec2.SecurityGroupRule(
        name,
        type=rule_type,
        from_port=from_port,
        to_port=to_port,
        protocol=protocol,
        security_group_id=security_group_id,
        opts=opts,
        **kwargs,
    )


def create_security_groups(name: str, vpc_id: pulumi.Input[str], opts: pulumi.ResourceOptions,
                           tags: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Create cluster and node security groups with the rules EKS needs

    Args:
        name: Resource name prefix
        vpc_id: VPC ID
        opts: Resource options parenting the resources
        tags: Additional tags

    Returns:
        Dict with both groups and their ids
    """
    tags = tags or {}

    cluster_sg = aws.ec2.SecurityGroup(
        f"{name}-cluster-sg",
        name_prefix=f"{name}-cluster-",
        vpc_id=vpc_id,
        tags=_tags(tags, f"{name}-cluster-sg"),
        opts=opts,
    )
    node_sg = aws.ec2.SecurityGroup(
        f"{name}-node-sg",
        name_prefix=f"{name}-node-",
        vpc_id=vpc_id,
        tags=_tags(tags, f"{name}-node-sg"),
        opts=opts,
    )

    anywhere = ["0.0.0.0/0"]
    _rule(f"{name}-cluster-egress", cluster_sg.id, opts, "egress", 0, 65535, "-1", cidr_blocks=anywhere)
    _rule(f"{name}-cluster-ingress-node", cluster_sg.id, opts, "ingress", 443, 443, "tcp",
          source_security_group_id=node_sg.id)
    _rule(f"{name}-node-ingress-self", node_sg.id, opts, "ingress", 0, 65535, "-1", self=True)
    _rule(f"{name}-node-ingress-cluster", node_sg.id, opts, "ingress", 1025, 65535, "tcp",
          source_security_group_id=cluster_sg.id)
    _rule(f"{name}-node-egress", node_sg.id, opts, "egress", 0, 65535, "-1", cidr_blocks=anywhere)

    return {
        "cluster_sg": cluster_sg,
        "node_sg": node_sg,
        "cluster_security_group_id": cluster_sg.id,
        "node_security_group_id": node_sg.id,
    }
