import copy
import json
from pathlib import Path
from typing import Dict, List, Tuple

import pytest
import yaml
from httpx import AsyncClient
from square.dtypes import K8sConfig

import pgclone.logstreams
from pgclone.errors import AlreadyExists, CloneError, NotFound
from pgclone.models import CloneConfig

SUPPORT = Path(__file__).parent / "support"


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    pgclone.logstreams.setup("DEBUG")


@pytest.fixture
def cfg() -> CloneConfig:
    return CloneConfig(
        kubeconfig=Path("/tmp/kind-kubeconf.yaml"),
        kubecontext="kind-kind",
        loglevel="info",
    )


def matches(labels: Dict[str, str], selector: str) -> bool:
    if selector == "":
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeStore:
    """In-memory stand-in for `pgclone.store.ObjectStore`.

    Objects live in `self.objects` keyed by `(kind, namespace, name)`.
    Namespaces use "" as their namespace.

    Inject failures with `self.failures[(method, kind)] = exception` or
    `self.failures[(method, kind, name)] = exception`. Kinds in
    `self.missing_kinds` behave like uninstalled CRDs.

    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str], dict] = {}
        self.failures: Dict[tuple, CloneError] = {}
        self.missing_kinds: set = set()
        self.calls: List[tuple] = []

    def add(self, kind: str, manifest: dict) -> None:
        meta = manifest["metadata"]
        ns = "" if kind == "Namespace" else meta.get("namespace", "")
        self.objects[(kind, ns, meta["name"])] = copy.deepcopy(manifest)

    def names(self, kind: str, namespace: str) -> List[str]:
        return sorted(n for k, ns, n in self.objects if (k, ns) == (kind, namespace))

    def _check(self, method: str, kind: str, name: str = "") -> None:
        self.calls.append((method, kind, name))
        for key in ((method, kind, name), (method, kind)):
            if key in self.failures:
                raise self.failures[key]
        if kind in self.missing_kinds:
            raise NotFound(f"{kind} is not installed")

    async def get(self, kind: str, namespace: str, name: str) -> dict:
        self._check("get", kind, name)
        try:
            return copy.deepcopy(self.objects[(kind, namespace, name)])
        except KeyError:
            raise NotFound(f"{kind} {namespace}/{name}")

    async def list(self, kind: str, namespace: str, selector: str = "") -> List[dict]:
        self._check("list", kind)

        # An empty namespace lists namespaced kinds across all namespaces.
        return [
            copy.deepcopy(v)
            for (k, ns, _), v in sorted(self.objects.items())
            if k == kind
            and (ns == namespace or (namespace == "" and kind != "Namespace"))
            and matches(v["metadata"].get("labels", {}), selector)
        ]

    async def create(self, kind: str, namespace: str, manifest: dict) -> dict:
        name = manifest["metadata"]["name"]
        self._check("create", kind, name)
        if (kind, namespace, name) in self.objects:
            raise AlreadyExists(f"{kind} {namespace}/{name}")
        self.objects[(kind, namespace, name)] = copy.deepcopy(manifest)
        return copy.deepcopy(manifest)

    async def update(self, kind: str, namespace: str, manifest: dict) -> dict:
        name = manifest["metadata"]["name"]
        self._check("update", kind, name)
        if (kind, namespace, name) not in self.objects:
            raise NotFound(f"{kind} {namespace}/{name}")
        self.objects[(kind, namespace, name)] = copy.deepcopy(manifest)
        return copy.deepcopy(manifest)

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        self._check("delete", kind, name)
        try:
            del self.objects[(kind, namespace, name)]
        except KeyError:
            raise NotFound(f"{kind} {namespace}/{name}")

    async def delete_collection(self, kind: str, namespace: str, selector: str) -> None:
        self._check("delete_collection", kind)
        for key, v in list(self.objects.items()):
            if key[:2] == (kind, namespace) and matches(
                v["metadata"].get("labels", {}), selector
            ):
                del self.objects[key]


@pytest.fixture
async def k8scfg(respx_mock):
    """Return an async test client."""
    async with AsyncClient(base_url="https:") as client:
        yield K8sConfig(client=client)


@pytest.fixture
def source_manifest() -> dict:
    """Return the raw PostgresCluster `prod/demo`."""
    return yaml.safe_load((SUPPORT / "postgrescluster.yaml").read_text())


@pytest.fixture
def backup_info_text() -> str:
    return (SUPPORT / "backup-info.json").read_text()


@pytest.fixture
def backup_info(backup_info_text) -> list:
    return json.loads(backup_info_text)


@pytest.fixture
def store(source_manifest) -> FakeStore:
    """Return a store with the source cluster and its dependencies in `prod`."""
    st = FakeStore()
    st.add("Namespace", {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "prod"}})
    st.add("PostgresCluster", source_manifest)
    st.add(
        "ConfigMap",
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": "pgbackrest-extra",
                "namespace": "prod",
                "resourceVersion": "1",
                "labels": {"app.kubernetes.io/managed-by": "Helm", "app": "demo"},
            },
            "data": {"extra.conf": "[global]\nprocess-max=4\n"},
        },
    )
    st.add(
        "Secret",
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "pgbackrest-s3-creds", "namespace": "prod", "uid": "x"},
            "type": "Opaque",
            "data": {"s3.conf": "W2dsb2JhbF0K"},
        },
    )

    # The store does not know Cilium unless a test says otherwise.
    st.missing_kinds.add("CiliumNetworkPolicy")
    return st
