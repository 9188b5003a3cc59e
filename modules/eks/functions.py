"""
EKS Module Functions
IAM roles, control plane, managed node group, core add-ons and kubeconfig
"""

import json
import pulumi
import pulumi_aws as aws
from typing import Any, Dict, List, Optional

CLUSTER_POLICIES = ["arn:aws:iam::aws:policy/AmazonEKSClusterPolicy"]
NODE_POLICIES = [
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
    "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore",
]
CORE_ADDONS = ["vpc-cni", "coredns", "kube-proxy"]


def _tags(base: Dict[str, str], name: str) -> Dict[str, str]:
    return {**base, "Name": name, "Module": "eks"}


def assume_role_policy(service: str) -> str:
    """Trust policy letting an AWS service assume a role"""
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Action": "sts:AssumeRole",
            "Effect": "Allow",
            "Principal": {"Service": service},
        }],
    })


def create_role(name: str, service: str, policy_arns: List[str], opts: pulumi.ResourceOptions,
                tags: Optional[Dict[str, str]] = None) -> aws.iam.Role:
    role = aws.iam.Role(
        name,
        name=name,
        assume_role_policy=assume_role_policy(service),
        tags=_tags(tags or {}, name),
        opts=opts,
    )
    for policy_arn in policy_arns:
        short = policy_arn.rsplit("/", 1)[-1].lower()
        aws.iam.RolePolicyAttachment(f"{name}-{short}", policy_arn=policy_arn, role=role.name, opts=opts)
    return role


def create_cluster(name: str, version: str, role_arn: pulumi.Input[str], subnet_ids: pulumi.Input[List[str]],
                   security_group_id: pulumi.Input[str], opts: pulumi.ResourceOptions,
                   log_retention_days: int = 30, kms_key_arn: str = "",
                   public_access_cidrs: Optional[List[str]] = None,
                   tags: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Create the EKS control plane with encrypted secrets and audit logging

    Args:
        name: Cluster name
        version: Kubernetes version
        role_arn: Cluster IAM role ARN
        subnet_ids: Subnets for the control plane ENIs
        security_group_id: Cluster security group
        opts: Resource options parenting the resources
        log_retention_days: CloudWatch retention for control plane logs
        kms_key_arn: Existing KMS key for secret encryption; one is created when empty
        public_access_cidrs: CIDRs allowed to reach the public endpoint
        tags: Additional tags

    Returns:
        Dict with the cluster resource and its connection outputs
    """
    tags = tags or {}

    log_group = aws.cloudwatch.LogGroup(
        f"{name}-eks-log-group",
        name=f"/aws/eks/{name}/cluster",
        retention_in_days=log_retention_days,
        tags=_tags(tags, f"{name}-eks-log-group"),
        opts=opts,
    )

    if not kms_key_arn:
        key = aws.kms.Key(
            f"{name}-eks-kms-key",
            description=f"EKS Secret Encryption Key for {name}",
            tags=_tags(tags, f"{name}-eks-kms-key"),
            opts=opts,
        )
        aws.kms.Alias(f"{name}-eks-kms-alias", name=f"alias/{name}-eks", target_key_id=key.key_id, opts=opts)
        kms_key_arn = key.arn

    cluster = aws.eks.Cluster(
        f"{name}-cluster",
        name=name,
        version=version,
        role_arn=role_arn,
        vpc_config=aws.eks.ClusterVpcConfigArgs(
            subnet_ids=subnet_ids,
            endpoint_private_access=False,
            endpoint_public_access=True,
            public_access_cidrs=public_access_cidrs or ["0.0.0.0/0"],
            security_group_ids=[security_group_id],
        ),
        enabled_cluster_log_types=["api", "audit", "authenticator"],
        encryption_config=aws.eks.ClusterEncryptionConfigArgs(
            provider=aws.eks.ClusterEncryptionConfigProviderArgs(key_arn=kms_key_arn),
            resources=["secrets"],
        ),
        tags=_tags(tags, f"{name}-cluster"),
        opts=pulumi.ResourceOptions.merge(opts, pulumi.ResourceOptions(depends_on=[log_group])),
    )

    return {
        "cluster": cluster,
        "cluster_name": cluster.name,
        "cluster_endpoint": cluster.endpoint,
        "cluster_ca_data": cluster.certificate_authority.data,
    }


def create_node_group(name: str, cluster: aws.eks.Cluster, role_arn: pulumi.Input[str],
                      subnet_ids: pulumi.Input[List[str]], opts: pulumi.ResourceOptions,
                      instance_types: Optional[List[str]] = None, desired_size: int = 2,
                      min_size: int = 1, max_size: int = 3, disk_size: int = 20,
                      capacity_type: str = "ON_DEMAND", tags: Optional[Dict[str, str]] = None) -> aws.eks.NodeGroup:
    return aws.eks.NodeGroup(
        f"{name}-node-group",
        cluster_name=cluster.name,
        node_group_name=f"{name}-nodes",
        node_role_arn=role_arn,
        subnet_ids=subnet_ids,
        capacity_type=capacity_type,
        instance_types=instance_types or ["t3.medium"],
        disk_size=disk_size,
        scaling_config=aws.eks.NodeGroupScalingConfigArgs(
            desired_size=desired_size,
            max_size=max_size,
            min_size=min_size,
        ),
        update_config=aws.eks.NodeGroupUpdateConfigArgs(max_unavailable_percentage=25),
        tags=_tags(tags or {}, f"{name}-node-group"),
        opts=opts,
    )


def create_core_addons(name: str, cluster: aws.eks.Cluster, node_group: aws.eks.NodeGroup,
                       opts: pulumi.ResourceOptions, addons: Optional[List[str]] = None,
                       tags: Optional[Dict[str, str]] = None) -> Dict[str, aws.eks.Addon]:
    """EKS managed add-ons; they wait for the node group so coredns can schedule"""
    created = {}
    for addon in CORE_ADDONS if addons is None else addons:
        created[addon] = aws.eks.Addon(
            f"{name}-{addon}-addon",
            cluster_name=cluster.name,
            addon_name=addon,
            resolve_conflicts_on_create="OVERWRITE",
            resolve_conflicts_on_update="OVERWRITE",
            tags=_tags(tags or {}, f"{name}-{addon}-addon"),
            opts=pulumi.ResourceOptions.merge(opts, pulumi.ResourceOptions(depends_on=[node_group])),
        )
    return created


def build_kubeconfig(cluster_name: str, endpoint: str, ca_data: str, region: Optional[str] = None) -> str:
    """
    Kubeconfig authenticating through `aws eks get-token`

    Args:
        cluster_name: EKS cluster name
        endpoint: API server URL
        ca_data: Base64 cluster CA certificate
        region: AWS region passed to the token command

    Returns:
        Kubeconfig as a JSON document
    """
    args = ["eks", "get-token", "--cluster-name", cluster_name]
    if region:
        args += ["--region", region]
    return json.dumps({
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": cluster_name, "cluster": {"server": endpoint, "certificate-authority-data": ca_data}}],
        "contexts": [{"name": cluster_name, "context": {"cluster": cluster_name, "user": cluster_name}}],
        "current-context": cluster_name,
        "users": [{
            "name": cluster_name,
            "user": {
                "exec": {
                    "apiVersion": "client.authentication.k8s.io/v1beta1",
                    "command": "aws",
                    "args": args,
                },
            },
        }],
    })
