"""Open up network policies between a cluster and its clone.

Namespaces often isolate their Postgres clusters with native `NetworkPolicy`
or with Cilium's `CiliumNetworkPolicy` resources. A clone in another namespace
must stream the backup from its source, which these policies would block.

This module only ever adds allow rules. Every rule carries the purpose labels
of the clone so that `remove_network_rules` can find and delete them again.
"""

import logging
from typing import Dict, List

from pgclone.defaults import CLUSTER_LABEL, purpose_labels, purpose_selector
from pgclone.errors import CloneError, ExternalCallFailed, NotFound
from pgclone.models import NetworkRuleRef, PostgresCluster
from pgclone.store import ObjectStore

logit = logging.getLogger("pgclone")

NATIVE = "NetworkPolicy"
CILIUM = "CiliumNetworkPolicy"

# Native policies select namespaces by this label, Cilium by the pseudo label.
NAMESPACE_LABEL = "kubernetes.io/metadata.name"
CILIUM_NAMESPACE_LABEL = "k8s:io.kubernetes.pod.namespace"

# Ports of the K8s API server for native egress rules.
API_PORTS = (443, 6443)


def _strip_source(key: str) -> str:
    """Remove the Cilium label source, eg `k8s:app` -> `app`."""
    prefix, sep, rest = key.partition(":")
    if sep and prefix in ("k8s", "any"):
        return rest
    return key


def selects_cluster(policy: dict, kind: str, cluster_name: str) -> bool:
    """Return `True` if `policy` applies to the Pods of `cluster_name`.

    An empty selector selects every Pod in the namespace and therefore also
    the cluster.

    """
    key = "podSelector" if kind == NATIVE else "endpointSelector"
    selector = (policy.get("spec") or {}).get(key) or {}
    labels = selector.get("matchLabels") or {}
    expressions = selector.get("matchExpressions") or []

    if len(labels) == 0 and len(expressions) == 0:
        return True

    labels = {_strip_source(k): v for k, v in labels.items()}
    return labels.get(CLUSTER_LABEL) == cluster_name


async def list_policies(store: ObjectStore, kind: str, namespace: str) -> List[dict]:
    """Return all policies of `kind` in `namespace`.

    Clusters without Cilium do not know the `CiliumNetworkPolicy` resource and
    return 404, which we treat like an empty list.

    """
    try:
        return await store.list(kind, namespace)
    except NotFound:
        logit.info(f"{kind} is not available in this cluster")
        return []


def _meta(name: str, namespace: str, clone_name: str) -> dict:
    return dict(name=name, namespace=namespace, labels=purpose_labels(clone_name))


# ----------------------------------------------------------------------
# Native NetworkPolicy.
# ----------------------------------------------------------------------


def _native_peer(cluster_name: str, namespace: str) -> dict:
    return {
        "podSelector": {"matchLabels": {CLUSTER_LABEL: cluster_name}},
        "namespaceSelector": {"matchLabels": {NAMESPACE_LABEL: namespace}},
    }


def native_rules(
    source_name: str, source_ns: str, clone_name: str, clone_ns: str
) -> List[dict]:
    """Return the native policies that connect the clone to its source."""
    ingress = dict(
        apiVersion="networking.k8s.io/v1",
        kind=NATIVE,
        metadata=_meta(f"{clone_name}-allow-ingress", source_ns, clone_name),
        spec={
            "podSelector": {"matchLabels": {CLUSTER_LABEL: source_name}},
            "policyTypes": ["Ingress"],
            "ingress": [{"from": [_native_peer(clone_name, clone_ns)]}],
        },
    )

    dns = {
        "to": [
            {
                "namespaceSelector": {"matchLabels": {NAMESPACE_LABEL: "kube-system"}},
                "podSelector": {"matchLabels": {"k8s-app": "kube-dns"}},
            }
        ],
        "ports": [{"protocol": "UDP", "port": 53}, {"protocol": "TCP", "port": 53}],
    }
    api = {"ports": [{"protocol": "TCP", "port": port} for port in API_PORTS]}

    # Clone Pods in the same namespace, eg replica to primary.
    own = {"podSelector": {"matchLabels": {CLUSTER_LABEL: clone_name}}}

    egress = dict(
        apiVersion="networking.k8s.io/v1",
        kind=NATIVE,
        metadata=_meta(f"{clone_name}-allow-egress", clone_ns, clone_name),
        spec={
            "podSelector": {"matchLabels": {CLUSTER_LABEL: clone_name}},
            "policyTypes": ["Egress"],
            "egress": [{"to": [_native_peer(source_name, source_ns), own]}, dns, api],
        },
    )
    return [ingress, egress]


# ----------------------------------------------------------------------
# CiliumNetworkPolicy.
# ----------------------------------------------------------------------


def _cilium_endpoint(cluster_name: str, namespace: str) -> Dict[str, dict]:
    return {
        "matchLabels": {
            CLUSTER_LABEL: cluster_name,
            CILIUM_NAMESPACE_LABEL: namespace,
        }
    }


def _cilium_dns() -> dict:
    return {
        "toEndpoints": [
            {
                "matchLabels": {
                    CILIUM_NAMESPACE_LABEL: "kube-system",
                    "k8s:k8s-app": "kube-dns",
                }
            }
        ],
        "toPorts": [
            {
                "ports": [{"port": "53", "protocol": "ANY"}],
                "rules": {"dns": [{"matchPattern": "*"}]},
            }
        ],
    }


def _cilium_api() -> dict:
    return {"toEntities": ["kube-apiserver"]}


def cilium_rules(
    source_name: str, source_ns: str, clone_name: str, clone_ns: str
) -> List[dict]:
    """Return the Cilium policies that connect the clone to its source."""
    ingress = dict(
        apiVersion="cilium.io/v2",
        kind=CILIUM,
        metadata=_meta(f"{clone_name}-allow-ingress", source_ns, clone_name),
        spec={
            "endpointSelector": {"matchLabels": {CLUSTER_LABEL: source_name}},
            "ingress": [{"fromEndpoints": [_cilium_endpoint(clone_name, clone_ns)]}],
        },
    )
    egress = dict(
        apiVersion="cilium.io/v2",
        kind=CILIUM,
        metadata=_meta(f"{clone_name}-allow-egress", clone_ns, clone_name),
        spec={
            "endpointSelector": {"matchLabels": {CLUSTER_LABEL: clone_name}},
            "egress": [
                {"toEndpoints": [_cilium_endpoint(source_name, source_ns)]},
                _cilium_dns(),
                _cilium_api(),
            ],
        },
    )
    return [ingress, egress]


def cilium_intra_rule(clone_name: str, clone_ns: str, egress: bool = True) -> dict:
    """Return the Cilium policy that lets the clone Pods talk to each other.

    A new clone in a namespace with Cilium policies may otherwise start in the
    default deny mode and never become ready.

    Without `egress` the rule has no egress section and leaves the outbound
    traffic of the clone unrestricted. Use it when no egress rule to the
    source exists.

    """
    own = {"matchLabels": {CLUSTER_LABEL: clone_name}}
    spec = {
        "endpointSelector": own,
        "ingress": [{"fromEndpoints": [own]}],
    }
    if egress:
        spec["egress"] = [{"toEndpoints": [own]}, _cilium_dns(), _cilium_api()]

    return dict(
        apiVersion="cilium.io/v2",
        kind=CILIUM,
        metadata=_meta(f"{clone_name}-allow-intra", clone_ns, clone_name),
        spec=spec,
    )


async def create_rules(store: ObjectStore, rules: List[dict]) -> List[NetworkRuleRef]:
    out = []
    for rule in rules:
        kind, meta = rule["kind"], rule["metadata"]
        try:
            await store.create(kind, meta["namespace"], rule)
        except CloneError as err:
            raise ExternalCallFailed(
                f"cannot create {kind} {meta['namespace']}/{meta['name']}: {err}"
            )
        out.append(NetworkRuleRef(kind=kind, namespace=meta["namespace"], name=meta["name"]))
    return out


async def inject_if_needed(
    store: ObjectStore, source: PostgresCluster, clone_name: str, target_ns: str
) -> List[NetworkRuleRef]:
    """Create the allow rules the clone needs to reach `source`.

    Both policy dialects are checked independently. A dialect only receives
    rules if its policies isolate the source cluster, except for the Cilium
    intra-clone rule which is created whenever Cilium policies exist.

    Return references to all created rules. This function does not clean up
    after itself. Use `remove_network_rules` for that.

    """
    source_name, source_ns = source.metadata.name, source.metadata.namespace
    created: List[NetworkRuleRef] = []

    policies = await list_policies(store, NATIVE, source_ns)
    if any(selects_cluster(_, NATIVE, source_name) for _ in policies):
        logit.info(f"native network policies isolate {source_ns}/{source_name}")
        rules = native_rules(source_name, source_ns, clone_name, target_ns)
        created += await create_rules(store, rules)

    policies = await list_policies(store, CILIUM, source_ns)
    if len(policies) > 0:
        rules = []
        if any(selects_cluster(_, CILIUM, source_name) for _ in policies):
            logit.info(f"cilium network policies isolate {source_ns}/{source_name}")
            rules = cilium_rules(source_name, source_ns, clone_name, target_ns)
        rules.append(cilium_intra_rule(clone_name, target_ns, egress=len(rules) > 0))
        created += await create_rules(store, rules)

    return created


async def remove_network_rules(
    store: ObjectStore, namespaces: List[str], clone_name: str
) -> None:
    """Delete all network rules we created for `clone_name` in `namespaces`.

    Errors are logged and otherwise ignored.

    """
    selector = purpose_selector(clone_name)
    for namespace in dict.fromkeys(namespaces):
        for kind in (NATIVE, CILIUM):
            try:
                await store.delete_collection(kind, namespace, selector)
            except NotFound:
                pass
            except CloneError as err:
                logit.error(
                    f"cannot delete {kind} rules in {namespace}", {"reason": str(err)}
                )
