"""Cluster Object Store.

Thin typed layer on top of `pgclone.k8s`. It knows the API paths of all
resource kinds and converts the error flags of the transport into the
exceptions in `pgclone.errors`.
"""

import logging
from typing import Dict, List

from square.dtypes import K8sConfig

import pgclone.k8s
from pgclone.errors import AlreadyExists, ExternalCallFailed, NotFound
from pgclone.models import K8sResource, factory_K8sResources

logit = logging.getLogger("pgclone")

# Body of every DELETE request.
DELETE_OPTIONS = {
    "apiVersion": "v1",
    "kind": "DeleteOptions",
    "propagationPolicy": "Background",
}


def resource_url(res: K8sResource, namespace: str = "", name: str = "") -> str:
    """Return the API path of `res`, eg `/api/v1/namespaces/default/secrets`."""
    prefix = "/api/v1" if res.apiVersion == "v1" else f"/apis/{res.apiVersion}"

    # Namespaced kinds without a namespace are listed across all namespaces.
    if res.namespaced and namespace != "":
        path = f"{prefix}/namespaces/{namespace}/{res.plural}"
    else:
        path = f"{prefix}/{res.plural}"
    return f"{path}/{name}" if name else path


def make_error(action: str, what: str, resp: dict, code: int) -> ExternalCallFailed:
    """Return the exception that matches the HTTP status `code`."""
    reason = resp.get("message", "") if isinstance(resp, dict) else ""
    msg = f"{action} {what} failed with {code}: {reason}"
    if code == 404:
        return NotFound(msg)
    if code == 409:
        return AlreadyExists(msg)
    return ExternalCallFailed(msg)


class ObjectStore:
    """Get, list, create, update and delete the resources the clone core needs.

    Usage:

    k8scfg, err = pgclone.k8s.create_cluster_config(kubeconfig, kubecontext)
    assert not err
    store = ObjectStore(k8scfg)
    cm = await store.get("ConfigMap", "default", "my-config")

    """

    def __init__(self, k8scfg: K8sConfig):
        self.k8scfg = k8scfg
        self.resources: Dict[str, K8sResource] = factory_K8sResources()

    def url(self, kind: str, namespace: str = "", name: str = "") -> str:
        return resource_url(self.resources[kind], namespace, name)

    async def get(self, kind: str, namespace: str, name: str) -> dict:
        url = self.url(kind, namespace, name)
        resp, code, err = await pgclone.k8s.get(self.k8scfg, url)
        if err:
            raise make_error("GET", f"{kind} {namespace}/{name}", resp, code)
        return resp

    async def list(self, kind: str, namespace: str, selector: str = "") -> List[dict]:
        url = pgclone.k8s.with_selector(self.url(kind, namespace), selector)
        resp, code, err = await pgclone.k8s.get(self.k8scfg, url)
        if err:
            raise make_error("LIST", f"{kind} in {namespace}", resp, code)
        return resp.get("items", None) or []

    async def create(self, kind: str, namespace: str, manifest: dict) -> dict:
        name = manifest.get("metadata", {}).get("name", "")
        url = self.url(kind, namespace)
        resp, code, err = await pgclone.k8s.post(self.k8scfg, url, manifest)
        if err:
            raise make_error("CREATE", f"{kind} {namespace}/{name}", resp, code)
        logit.info(f"created {kind} {namespace}/{name}")
        return resp

    async def update(self, kind: str, namespace: str, manifest: dict) -> dict:
        name = manifest["metadata"]["name"]
        url = self.url(kind, namespace, name)
        resp, code, err = await pgclone.k8s.put(self.k8scfg, url, manifest)
        if err:
            raise make_error("UPDATE", f"{kind} {namespace}/{name}", resp, code)
        logit.info(f"updated {kind} {namespace}/{name}")
        return resp

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        url = self.url(kind, namespace, name)
        resp, code, err = await pgclone.k8s.delete(self.k8scfg, url, DELETE_OPTIONS)
        if err:
            raise make_error("DELETE", f"{kind} {namespace}/{name}", resp, code)
        logit.info(f"deleted {kind} {namespace}/{name}")

    async def delete_collection(self, kind: str, namespace: str, selector: str) -> None:
        url = pgclone.k8s.with_selector(self.url(kind, namespace), selector)
        resp, code, err = await pgclone.k8s.delete(self.k8scfg, url, DELETE_OPTIONS)
        if err:
            raise make_error("DELETE", f"{kind} in {namespace} ({selector})", resp, code)
        logit.info(f"deleted all {kind} in {namespace} with {selector}")
