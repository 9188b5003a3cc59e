"""
Infrastructure modules for an EKS environment
vpc provides "network", eks requires it and provides "cluster", addons requires "cluster"
"""

from .vpc import vpc, VpcModule
from .eks import eks, EksModule
from .addons import addons, AddonsModule

__all__ = [
    "vpc",
    "eks",
    "addons",
    "VpcModule",
    "EksModule",
    "AddonsModule",
]
