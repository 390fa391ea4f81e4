import pytest

from pgclone.defaults import CLUSTER_LABEL, purpose_labels
from pgclone.errors import ExternalCallFailed
from pgclone.generate import parse_cluster
from pgclone.models import NetworkRuleRef
from pgclone.netpol import (
    CILIUM,
    NATIVE,
    cilium_intra_rule,
    cilium_rules,
    inject_if_needed,
    native_rules,
    remove_network_rules,
    selects_cluster,
)

CLONE = "clone-demo"


def native_policy(name: str, selector: dict) -> dict:
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {"name": name, "namespace": "prod"},
        "spec": {"podSelector": selector, "policyTypes": ["Ingress"]},
    }


def cilium_policy(name: str, selector: dict) -> dict:
    return {
        "apiVersion": "cilium.io/v2",
        "kind": "CiliumNetworkPolicy",
        "metadata": {"name": name, "namespace": "prod"},
        "spec": {"endpointSelector": selector},
    }


class TestSelectors:
    def test_native(self):
        fun = selects_cluster
        own = native_policy("x", {"matchLabels": {CLUSTER_LABEL: "demo"}})
        other = native_policy("x", {"matchLabels": {CLUSTER_LABEL: "other"}})
        everything = native_policy("x", {})
        unrelated = native_policy("x", {"matchLabels": {"app": "web"}})

        assert fun(own, NATIVE, "demo")
        assert fun(everything, NATIVE, "demo")
        assert not fun(other, NATIVE, "demo")
        assert not fun(unrelated, NATIVE, "demo")

    def test_cilium(self):
        fun = selects_cluster
        own = cilium_policy("x", {"matchLabels": {CLUSTER_LABEL: "demo"}})
        prefixed = cilium_policy("x", {"matchLabels": {f"k8s:{CLUSTER_LABEL}": "demo"}})
        everything = cilium_policy("x", {})

        assert fun(own, CILIUM, "demo")
        assert fun(prefixed, CILIUM, "demo")
        assert fun(everything, CILIUM, "demo")
        assert not fun(own, CILIUM, "other")


class TestRules:
    def test_native_rules(self):
        ingress, egress = native_rules("demo", "prod", CLONE, "dev")

        assert ingress["metadata"]["namespace"] == "prod"
        assert ingress["metadata"]["labels"] == purpose_labels(CLONE)
        assert ingress["spec"]["podSelector"] == {"matchLabels": {CLUSTER_LABEL: "demo"}}
        peer = ingress["spec"]["ingress"][0]["from"][0]
        assert peer["podSelector"] == {"matchLabels": {CLUSTER_LABEL: CLONE}}
        assert peer["namespaceSelector"] == {
            "matchLabels": {"kubernetes.io/metadata.name": "dev"}
        }

        assert egress["metadata"]["namespace"] == "dev"
        assert egress["spec"]["podSelector"] == {"matchLabels": {CLUSTER_LABEL: CLONE}}
        peer = egress["spec"]["egress"][0]["to"][0]
        assert peer["podSelector"] == {"matchLabels": {CLUSTER_LABEL: "demo"}}

        # Clone Pods must still reach each other.
        assert egress["spec"]["egress"][0]["to"][1] == {
            "podSelector": {"matchLabels": {CLUSTER_LABEL: CLONE}}
        }

        ports = [p["port"] for rule in egress["spec"]["egress"] for p in rule.get("ports", [])]
        assert set(ports) == {53, 443, 6443}

    def test_cilium_rules(self):
        ingress, egress = cilium_rules("demo", "prod", CLONE, "dev")
        assert ingress["metadata"]["namespace"] == "prod"
        assert egress["metadata"]["namespace"] == "dev"
        assert ingress["metadata"]["labels"] == purpose_labels(CLONE)

        endpoint = ingress["spec"]["ingress"][0]["fromEndpoints"][0]["matchLabels"]
        assert endpoint == {
            CLUSTER_LABEL: CLONE,
            "k8s:io.kubernetes.pod.namespace": "dev",
        }

        rules = egress["spec"]["egress"]
        assert rules[0]["toEndpoints"][0]["matchLabels"][CLUSTER_LABEL] == "demo"
        assert rules[1]["toPorts"][0]["ports"] == [{"port": "53", "protocol": "ANY"}]
        assert rules[2] == {"toEntities": ["kube-apiserver"]}

    def test_cilium_intra_rule(self):
        rule = cilium_intra_rule(CLONE, "dev")
        own = {"matchLabels": {CLUSTER_LABEL: CLONE}}
        assert rule["metadata"]["namespace"] == "dev"
        assert rule["spec"]["endpointSelector"] == own
        assert rule["spec"]["ingress"] == [{"fromEndpoints": [own]}]
        assert rule["spec"]["egress"][0] == {"toEndpoints": [own]}

        # Without egress the outbound traffic of the clone stays unrestricted.
        rule = cilium_intra_rule(CLONE, "dev", egress=False)
        assert "egress" not in rule["spec"]
        assert rule["spec"]["ingress"] == [{"fromEndpoints": [own]}]

    def test_rule_names_are_unique(self):
        rules = native_rules("demo", "prod", CLONE, "dev")
        rules += cilium_rules("demo", "prod", CLONE, "dev")
        rules.append(cilium_intra_rule(CLONE, "dev"))

        keys = [
            (_["kind"], _["metadata"]["namespace"], _["metadata"]["name"]) for _ in rules
        ]
        assert len(set(keys)) == len(keys)


class TestInject:
    async def test_no_policies(self, store, source_manifest):
        source = parse_cluster(source_manifest)
        assert await inject_if_needed(store, source, CLONE, "dev") == []
        assert [_ for _ in store.calls if _[0] == "create"] == []

    async def test_policies_do_not_isolate_cluster(self, store, source_manifest):
        source = parse_cluster(source_manifest)
        store.add(NATIVE, native_policy("web", {"matchLabels": {"app": "web"}}))
        assert await inject_if_needed(store, source, CLONE, "dev") == []

    async def test_native(self, store, source_manifest):
        source = parse_cluster(source_manifest)
        store.add(NATIVE, native_policy("db", {"matchLabels": {CLUSTER_LABEL: "demo"}}))

        refs = await inject_if_needed(store, source, CLONE, "dev")
        assert refs == [
            NetworkRuleRef(kind=NATIVE, namespace="prod", name=f"{CLONE}-allow-ingress"),
            NetworkRuleRef(kind=NATIVE, namespace="dev", name=f"{CLONE}-allow-egress"),
        ]
        assert store.names(NATIVE, "prod") == ["clone-demo-allow-ingress", "db"]
        assert store.names(NATIVE, "dev") == ["clone-demo-allow-egress"]

    async def test_cilium_isolating(self, store, source_manifest):
        source = parse_cluster(source_manifest)
        store.missing_kinds.clear()
        store.add(CILIUM, cilium_policy("db", {}))

        refs = await inject_if_needed(store, source, CLONE, "dev")
        assert [(_.namespace, _.name) for _ in refs] == [
            ("prod", f"{CLONE}-allow-ingress"),
            ("dev", f"{CLONE}-allow-egress"),
            ("dev", f"{CLONE}-allow-intra"),
        ]
        assert all(_.kind == CILIUM for _ in refs)

        rule = await store.get(CILIUM, "dev", f"{CLONE}-allow-intra")
        own = {"matchLabels": {CLUSTER_LABEL: CLONE}}
        assert rule["spec"]["egress"][0] == {"toEndpoints": [own]}

    async def test_cilium_intra_only(self, store, source_manifest):
        """Any Cilium policy requires the intra-clone rule."""
        source = parse_cluster(source_manifest)
        store.missing_kinds.clear()
        store.add(CILIUM, cilium_policy("web", {"matchLabels": {"app": "web"}}))

        refs = await inject_if_needed(store, source, CLONE, "dev")
        assert refs == [
            NetworkRuleRef(kind=CILIUM, namespace="dev", name=f"{CLONE}-allow-intra")
        ]

        # The clone must still reach its source.
        rule = await store.get(CILIUM, "dev", f"{CLONE}-allow-intra")
        assert "egress" not in rule["spec"]

    async def test_both_dialects(self, store, source_manifest):
        source = parse_cluster(source_manifest)
        store.missing_kinds.clear()
        store.add(NATIVE, native_policy("db", {}))
        store.add(CILIUM, cilium_policy("db", {"matchLabels": {CLUSTER_LABEL: "demo"}}))

        refs = await inject_if_needed(store, source, CLONE, "dev")
        assert [_.kind for _ in refs] == [NATIVE, NATIVE, CILIUM, CILIUM, CILIUM]

    async def test_creation_failure(self, store, source_manifest):
        source = parse_cluster(source_manifest)
        store.add(NATIVE, native_policy("db", {}))
        store.failures[("create", NATIVE, f"{CLONE}-allow-egress")] = ExternalCallFailed(
            "denied"
        )

        with pytest.raises(ExternalCallFailed) as e:
            await inject_if_needed(store, source, CLONE, "dev")
        assert f"{CLONE}-allow-egress" in str(e.value)

        # No local compensation: the first rule is still there.
        assert f"{CLONE}-allow-ingress" in store.names(NATIVE, "prod")


class TestRemove:
    async def test_remove_network_rules(self, store, source_manifest):
        source = parse_cluster(source_manifest)
        store.missing_kinds.clear()
        store.add(NATIVE, native_policy("db", {}))
        store.add(CILIUM, cilium_policy("db", {}))
        await inject_if_needed(store, source, CLONE, "dev")

        # Rules of another clone must survive.
        other = native_rules("demo", "prod", "clone-other", "dev")[0]
        store.add(NATIVE, other)

        await remove_network_rules(store, ["dev", "prod", "dev"], CLONE)
        assert store.names(NATIVE, "prod") == ["clone-other-allow-ingress", "db"]
        assert store.names(CILIUM, "prod") == ["db"]
        assert store.names(NATIVE, "dev") == []
        assert store.names(CILIUM, "dev") == []

        # Every namespace is only visited once.
        calls = [_ for _ in store.calls if _[0] == "delete_collection"]
        assert len(calls) == 4

    async def test_remove_tolerates_errors(self, store):
        # Cilium is missing and native deletion fails.
        store.failures[("delete_collection", NATIVE)] = ExternalCallFailed("boom")
        await remove_network_rules(store, ["dev"], CLONE)
