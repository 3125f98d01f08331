"""
Reconciliation: locate, adopt, create, update and destroy managed resources.
"""

from .drivers import (
    ResourceDriver, TerraformDriver, NamespaceDriver, SecretDriver,
    TlsSecretDriver, HelmReleaseDriver, BucketDriver,
)
from .locator import Locator
from .reconciler import Reconciler, order_by_dependencies, diverging_keys

__all__ = [
    "ResourceDriver",
    "TerraformDriver",
    "NamespaceDriver",
    "SecretDriver",
    "TlsSecretDriver",
    "HelmReleaseDriver",
    "BucketDriver",
    "Locator",
    "Reconciler",
    "order_by_dependencies",
    "diverging_keys",
]
