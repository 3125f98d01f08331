"""
Shared fixtures and in-memory fakes for drivers, object storage and pods.
"""

import copy
import hashlib
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from tether.errors import ResourceLookupError
from tether.models import BackingStore, LifecyclePolicy, ManagedResource
from tether.reconcile.drivers import ResourceDriver


@pytest.fixture(autouse=True)
def tether_home(tmp_path, monkeypatch):
    home = tmp_path / "tether-home"
    monkeypatch.setenv("TETHER_HOME", str(home))
    return home


class FakeCloudDriver(ResourceDriver):
    """
    Cloud store with separate local state, like terraform.

    cloud holds what exists in the provider; state what is tracked locally.
    """

    tracks_state = True
    safe_update = False

    def __init__(self, calls: Optional[List[tuple]] = None):
        self.cloud: Dict[str, Dict[str, Any]] = {}
        self.state: Dict[str, Dict[str, Any]] = {}
        self.calls = calls if calls is not None else []
        self.lookup_failures = 0

    def observe(self, resource):
        if self.lookup_failures:
            self.lookup_failures -= 1
            raise ResourceLookupError(resource.name, "connection reset")
        found = self.cloud.get(resource.identity)
        return copy.deepcopy(found) if found is not None else None

    def recorded(self, resource):
        found = self.state.get(resource.identity)
        return copy.deepcopy(found) if found is not None else None

    def create(self, resource):
        self.calls.append(("create", resource.name))
        self.cloud[resource.identity] = copy.deepcopy(resource.desired)
        self.state[resource.identity] = copy.deepcopy(resource.desired)

    def adopt(self, resource, identity):
        self.calls.append(("adopt", resource.name))
        self.state[identity] = copy.deepcopy(self.cloud[identity])

    def update(self, resource):
        self.calls.append(("update", resource.name))
        self.cloud[resource.identity].update(copy.deepcopy(resource.desired))
        self.state[resource.identity] = copy.deepcopy(self.cloud[resource.identity])

    def destroy(self, resource):
        self.calls.append(("destroy", resource.name))
        self.cloud.pop(resource.identity, None)
        self.state.pop(resource.identity, None)


class FakeObjectDriver(ResourceDriver):
    """Self-tracking store, like the Kubernetes API."""

    def __init__(self, calls: Optional[List[tuple]] = None):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls = calls if calls is not None else []

    def observe(self, resource):
        found = self.objects.get(resource.identity)
        return copy.deepcopy(found) if found is not None else None

    def create(self, resource):
        self.calls.append(("create", resource.name))
        self.objects[resource.identity] = copy.deepcopy(resource.desired)

    def destroy(self, resource):
        self.calls.append(("destroy", resource.name))
        self.objects.pop(resource.identity, None)


def cloud_resource(name: str, desired: Optional[Dict[str, Any]] = None, protected: bool = False,
                   depends_on: Optional[List[str]] = None) -> ManagedResource:
    return ManagedResource(
        name=name,
        kind="fake_cloud",
        store=BackingStore.CLOUD,
        identity=f"projects/demo/{name}",
        desired=desired if desired is not None else {"name": name},
        policy=LifecyclePolicy.PROTECTED if protected else LifecyclePolicy.EPHEMERAL,
        depends_on=depends_on or [],
        address=f"fake.{name.replace('-', '_')}",
    )


def cluster_object(name: str, desired: Optional[Dict[str, Any]] = None,
                   depends_on: Optional[List[str]] = None) -> ManagedResource:
    return ManagedResource(
        name=name,
        kind="fake_object",
        store=BackingStore.CLUSTER,
        identity=f"ai/{name}",
        desired=desired if desired is not None else {"type": "Opaque"},
        depends_on=depends_on or [],
    )


class FakeObjectStore:
    """In-memory stand-in for tether.storage.ObjectStore."""

    def __init__(self, bucket_name: str = "test-bucket"):
        self.bucket_name = bucket_name
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.fail_puts = False
        self.put_calls: List[str] = []
        self.get_calls: List[str] = []

    def stat(self, key):
        found = self.objects.get(key)
        if found is None:
            return None
        return {
            "size": len(found["data"]),
            "updated": found["updated"],
            "metadata": dict(found["metadata"]),
            "generation": 1,
        }

    def exists(self, key):
        return key in self.objects

    def get(self, key):
        self.get_calls.append(key)
        found = self.objects.get(key)
        return found["data"] if found is not None else None

    def put(self, key, data, metadata=None, content_type="application/octet-stream"):
        self.put_calls.append(key)
        if self.fail_puts:
            raise ResourceLookupError(f"gs://{self.bucket_name}/{key}", "storage unavailable")
        self.objects[key] = {
            "data": bytes(data),
            "metadata": dict(metadata or {}, sha256=hashlib.sha256(data).hexdigest()),
            "updated": datetime.utcnow(),
        }

    def list(self, prefix):
        return [
            {"key": key, "size": len(obj["data"]), "updated": obj["updated"], "metadata": dict(obj["metadata"])}
            for key, obj in sorted(self.objects.items())
            if key.startswith(prefix)
        ]


class FakePods:
    """Cluster access used by the backup coordinator and certificate provisioner."""

    def __init__(self):
        self.pods: Dict[str, str] = {}           # "namespace/selector" -> pod name
        self.files: Dict[str, bytes] = {}        # "pod:path" -> bytes
        self.secrets: Dict[str, Dict[str, Any]] = {}
        self.namespaces: List[str] = []

    def find_pod(self, namespace, selector):
        return self.pods.get(f"{namespace}/{selector}")

    def read_file(self, namespace, pod, path, container=None):
        return self.files.get(f"{pod}:{path}")

    def secret(self, namespace, name):
        return self.secrets.get(f"{namespace}/{name}")

    def create_namespace(self, name, labels=None, annotations=None):
        if name not in self.namespaces:
            self.namespaces.append(name)

    def create_tls_secret(self, namespace, name, certificate, private_key):
        self.secrets[f"{namespace}/{name}"] = {
            "type": "kubernetes.io/tls",
            "keys": ["tls.crt", "tls.key"],
            "annotations": {},
            "data": {"tls.crt": certificate, "tls.key": private_key},
        }


SQLITE_DB = b"SQLite format 3\x00" + b"\x10\x00\x01\x01" + b"user:alice@example.com" * 64


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def pods():
    return FakePods()
