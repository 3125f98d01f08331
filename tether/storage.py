"""
Google Cloud Storage access for certificates and database snapshots.
"""

import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.api_core.exceptions import Conflict, GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage

from .errors import ResourceLookupError

logger = logging.getLogger(__name__)


class ObjectStore:
    """
    Object get/put/stat against one bucket.

    Reads return None for missing objects. Transport and auth failures are
    raised as ResourceLookupError.
    """

    def __init__(self, bucket_name: str, project: Optional[str] = None, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name
        self.project = project
        self._client = client

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client(project=self.project)
        return self._client

    @property
    def bucket(self) -> storage.Bucket:
        return self.client.bucket(self.bucket_name)

    def stat(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Object metadata, or None if the object does not exist.

        Returns:
            Dict with size, updated, metadata and generation
        """
        try:
            blob = self.bucket.get_blob(key)
        except NotFound:
            return None
        except (GoogleAPIError, GoogleAuthError) as e:
            raise ResourceLookupError(f"gs://{self.bucket_name}/{key}", str(e)) from e
        if blob is None:
            return None
        return {
            "size": blob.size,
            "updated": blob.updated,
            "metadata": blob.metadata or {},
            "generation": blob.generation,
        }

    def exists(self, key: str) -> bool:
        return self.stat(key) is not None

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self.bucket.blob(key).download_as_bytes()
        except NotFound:
            return None
        except (GoogleAPIError, GoogleAuthError) as e:
            raise ResourceLookupError(f"gs://{self.bucket_name}/{key}", str(e)) from e

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None,
            content_type: str = "application/octet-stream") -> None:
        """
        Upload bytes; a sha256 digest is always attached as metadata.

        Raises:
            ResourceLookupError: On upload or credential failure (callers decide whether it is fatal)
        """
        try:
            blob = self.bucket.blob(key)
            blob.metadata = dict(metadata or {}, sha256=hashlib.sha256(data).hexdigest())
            blob.upload_from_string(data, content_type=content_type)
        except (GoogleAPIError, GoogleAuthError) as e:
            raise ResourceLookupError(f"gs://{self.bucket_name}/{key}", str(e)) from e
        logger.debug(f"Uploaded gs://{self.bucket_name}/{key} ({len(data)} bytes)")

    def list(self, prefix: str) -> List[Dict[str, Any]]:
        try:
            blobs = list(self.client.list_blobs(self.bucket_name, prefix=prefix))
        except NotFound:
            return []
        except (GoogleAPIError, GoogleAuthError) as e:
            raise ResourceLookupError(f"gs://{self.bucket_name}/{prefix}", str(e)) from e
        return [
            {"key": b.name, "size": b.size, "updated": b.updated, "metadata": b.metadata or {}}
            for b in blobs
        ]


class BucketManager:
    """Bucket-level lookups and settings for the backup bucket."""

    def __init__(self, project: Optional[str], client: Optional[storage.Client] = None):
        self.project = project
        self._client = client

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client(project=self.project)
        return self._client

    def describe(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            bucket = self.client.lookup_bucket(name)
        except (GoogleAPIError, GoogleAuthError) as e:
            raise ResourceLookupError(f"bucket {name}", str(e)) from e
        if bucket is None:
            return None
        return {
            "location": (bucket.location or "").lower(),
            "versioning": bool(bucket.versioning_enabled),
            "uniform_access": bool(bucket.iam_configuration.uniform_bucket_level_access_enabled),
            "retention_days": _delete_age(bucket.lifecycle_rules, "backups/"),
        }

    def create(self, name: str, location: str) -> None:
        try:
            self.client.create_bucket(name, project=self.project, location=location)
        except Conflict:
            logger.info(f"Bucket {name} already exists, continuing")

    def configure(self, name: str, retention_days: int, prefix: str = "backups/") -> None:
        """
        Apply the age-based delete rule, versioning and uniform access.

        Args:
            name: Bucket name
            retention_days: Age after which objects under prefix are deleted
            prefix: Object prefix the lifecycle rule applies to
        """
        bucket = self.client.get_bucket(name)
        bucket.lifecycle_rules = []
        bucket.add_lifecycle_delete_rule(age=retention_days, matches_prefix=[prefix])
        bucket.versioning_enabled = True
        bucket.iam_configuration.uniform_bucket_level_access_enabled = True
        bucket.patch()

    def delete(self, name: str) -> None:
        self.client.get_bucket(name).delete(force=True)


def _delete_age(rules, prefix: str) -> Optional[int]:
    for rule in rules or []:
        action = rule.get("action", {})
        condition = rule.get("condition", {})
        if action.get("type") == "Delete" and prefix in condition.get("matchesPrefix", []):
            return condition.get("age")
    return None


def timestamp_key(prefix: str, filename: str, when: Optional[datetime] = None) -> str:
    """Key like backups/20250101-120000/webui.db."""
    stamp = (when or datetime.utcnow()).strftime("%Y%m%d-%H%M%S")
    return f"{prefix.rstrip('/')}/{stamp}/{filename}"
