"""
Certificate provisioner: remote cache, then local cache, then generate.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from kubernetes.client.rest import ApiException

from ..errors import CertificateSourceUnavailable, ResourceLookupError
from ..events import emit_event, EventTypes
from ..kube import ClusterClient
from ..models import CertificateBundle
from ..storage import ObjectStore
from .generate import generate_self_signed, inspect_certificate

logger = logging.getLogger(__name__)


class CertificateProvisioner:
    """
    Resolves a TLS bundle for a domain and publishes it as a cluster secret.

    The remote cache (gs://<bucket>/certs/) is authoritative; the local
    directory and the cluster secret are copies.
    """

    def __init__(self, store: ObjectStore, certs_dir: Path, kube: Optional[ClusterClient] = None,
                 run_id: Optional[str] = None, prefix: str = "certs"):
        self.store = store
        self.certs_dir = Path(certs_dir)
        self.kube = kube
        self.run_id = run_id
        self.prefix = prefix.rstrip("/")
        self.warnings: List[str] = []

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)
        if self.run_id:
            emit_event(self.run_id, EventTypes.WARN, {"message": message})

    def remote_keys(self, domain: str) -> Tuple[str, str]:
        return f"{self.prefix}/{domain}.crt", f"{self.prefix}/{domain}.key"

    def local_paths(self, domain: str) -> Tuple[Path, Path]:
        return self.certs_dir / f"{domain}.crt", self.certs_dir / f"{domain}.key"

    def ensure_certificate(self, domain: str) -> CertificateBundle:
        """
        Resolve a bundle for domain; the first source that succeeds wins.

        Args:
            domain: Domain the certificate must cover

        Returns:
            CertificateBundle whose subject alternative names include domain

        Raises:
            CertificateSourceUnavailable: If cache, local files and generation all fail
        """
        reasons = []

        try:
            bundle = self._from_remote(domain)
        except (ResourceLookupError, ValueError) as e:
            reasons.append(f"remote cache: {e}")
            self._warn(f"Remote certificate cache unusable for {domain}: {e}")
            bundle = None
        if bundle is not None:
            self._write_local(bundle)
            return self._resolved(bundle)

        try:
            bundle = self._from_local(domain)
        except (OSError, ValueError) as e:
            reasons.append(f"local cache: {e}")
            self._warn(f"Local certificate files unusable for {domain}: {e}")
            bundle = None
        if bundle is not None:
            self._upload(bundle)
            return self._resolved(bundle)

        try:
            bundle = self._generate(domain)
        except (OSError, ValueError) as e:
            reasons.append(f"generation: {e}")
            raise CertificateSourceUnavailable(domain, reasons) from e
        self._upload(bundle)
        return self._resolved(bundle)

    def _resolved(self, bundle: CertificateBundle) -> CertificateBundle:
        logger.info(f"Certificate for {bundle.domain} resolved from {bundle.source}")
        if self.run_id:
            emit_event(self.run_id, EventTypes.CERT_RESOLVED, {
                "domain": bundle.domain,
                "source": bundle.source,
                "expiry": bundle.expiry.isoformat() if bundle.expiry else None,
            })
        return bundle

    def _bundle(self, domain: str, cert_pem: bytes, key_pem: bytes, source: str) -> CertificateBundle:
        names, expiry = inspect_certificate(cert_pem)
        if domain not in names:
            raise ValueError(f"certificate does not cover {domain} (SAN: {', '.join(names) or 'none'})")
        return CertificateBundle(
            domain=domain,
            certificate=cert_pem,
            private_key=key_pem,
            source=source,
            expiry=expiry,
            subject_alt_names=names,
        )

    def _from_remote(self, domain: str) -> Optional[CertificateBundle]:
        cert_key, key_key = self.remote_keys(domain)
        if not (self.store.exists(cert_key) and self.store.exists(key_key)):
            return None
        cert_pem = self.store.get(cert_key)
        key_pem = self.store.get(key_key)
        if cert_pem is None or key_pem is None:
            return None
        return self._bundle(domain, cert_pem, key_pem, "cache")

    def _from_local(self, domain: str) -> Optional[CertificateBundle]:
        cert_path, key_path = self.local_paths(domain)
        if not (cert_path.exists() and key_path.exists()):
            return None
        return self._bundle(domain, cert_path.read_bytes(), key_path.read_bytes(), "local")

    def _generate(self, domain: str) -> CertificateBundle:
        logger.info(f"No certificate found for {domain}, generating a self-signed one")
        cert_pem, key_pem = generate_self_signed(domain)
        bundle = self._bundle(domain, cert_pem, key_pem, "generated")
        self._write_local(bundle, required=True)
        return bundle

    def _write_local(self, bundle: CertificateBundle, required: bool = False) -> None:
        cert_path, key_path = self.local_paths(bundle.domain)
        try:
            self.certs_dir.mkdir(parents=True, exist_ok=True)
            cert_path.write_bytes(bundle.certificate)
            key_path.write_bytes(bundle.private_key)
            os.chmod(key_path, 0o600)
        except OSError as e:
            if required:
                raise
            self._warn(f"Could not write local certificate copy to {self.certs_dir}: {e}")

    def _upload(self, bundle: CertificateBundle) -> None:
        cert_key, key_key = self.remote_keys(bundle.domain)
        try:
            self.store.put(cert_key, bundle.certificate, content_type="application/x-pem-file")
            self.store.put(key_key, bundle.private_key, content_type="application/x-pem-file")
        except (GoogleAPIError, GoogleAuthError, ResourceLookupError, OSError) as e:
            self._warn(f"Could not upload certificate to gs://{self.store.bucket_name}/{self.prefix}/ "
                       f"(using local copy only): {e}")

    def materialize(self, bundle: CertificateBundle, namespace: str, secret_name: str) -> bool:
        """
        Publish the bundle as a kubernetes.io/tls secret if none exists.

        Returns:
            True if the secret was created, False if an existing one was kept
        """
        if self.kube is None:
            raise RuntimeError("No cluster client configured for certificate materialization")

        if self.kube.secret(namespace, secret_name) is not None:
            logger.info(f"TLS secret {namespace}/{secret_name} already exists, leaving it untouched")
            created = False
        else:
            self.kube.create_namespace(namespace)
            try:
                self.kube.create_tls_secret(namespace, secret_name, bundle.certificate, bundle.private_key)
                created = True
            except ApiException as e:
                if e.status != 409:
                    raise
                created = False

        if self.run_id:
            emit_event(self.run_id, EventTypes.CERT_SECRET, {
                "secret": f"{namespace}/{secret_name}",
                "created": created,
            })
        return created
