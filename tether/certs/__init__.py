"""
TLS certificate resolution and publication.
"""

from .generate import generate_self_signed, inspect_certificate
from .provisioner import CertificateProvisioner

__all__ = [
    "generate_self_signed",
    "inspect_certificate",
    "CertificateProvisioner",
]
