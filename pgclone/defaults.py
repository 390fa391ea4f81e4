from typing import Dict, Tuple

# Label PGO puts on every Pod of a cluster.
CLUSTER_LABEL = "postgres-operator.crunchydata.com/cluster"

# Labels that identify the primary database Pod of a cluster.
DATA_LABEL = "postgres-operator.crunchydata.com/data"
ROLE_LABEL = "postgres-operator.crunchydata.com/role"

# Container in the database Pod that runs pgBackRest.
DATABASE_CONTAINER = "database"

# Every object we create carries this label pair so that we can find and
# delete it again without the in-memory ledger.
PURPOSE_LABEL = "purpose"
PURPOSE_VALUE = "automatic-test-backup-restore"
CLONE_NAME_LABEL = "pgclone/clone-name"

# Clone names are `clone-<source>`, cut to the maximum length of a DNS label.
CLONE_NAME_PREFIX = "clone-"
MAX_NAME_LENGTH = 63

# Repository every clone uses for its own backups.
LOCAL_REPO_NAME = "repo1"

# Global pgBackRest options for this repository slot are not carried over.
DROPPED_GLOBAL_PREFIX = "repo2"

# Fields under `spec` that we copy verbatim. Never `monitoring`.
COPIED_SPEC_KEYS = ("openshift", "patroni", "port", "postgresVersion", "shutdown", "users")

# Fields of `spec.backups.pgbackrest` that we copy verbatim.
COPIED_PGBACKREST_KEYS = ("jobs", "metadata", "repoHost", "sidecars")

# Fields of `spec.instances[]` that we keep.
COPIED_INSTANCE_KEYS = ("name", "replicas", "resources", "sidecars", "dataVolumeClaimSpec")

# Helm adopts resources based on these markers.
HELM_MANAGED_BY = ("app.kubernetes.io/managed-by", "Helm")
HELM_CHART_LABEL = "helm.sh/chart"
HELM_RELEASE_ANNOTATIONS = (
    "meta.helm.sh/release-name",
    "meta.helm.sh/release-namespace",
)

# Annotations that must not leak into a clone.
DROPPED_ANNOTATIONS = (
    "kubectl.kubernetes.io/last-applied-configuration",
    "restarted",
    "postgres-operator.crunchydata.com/restarted",
)

# Name of the ConfigMap with the verbose pgBackRest settings.
VERBOSE_CONFIGMAP_NAME = "pgbackrest-additional-config"


def purpose_labels(clone_name: str) -> Dict[str, str]:
    """Return the labels of every object we create on behalf of `clone_name`."""
    return {PURPOSE_LABEL: PURPOSE_VALUE, CLONE_NAME_LABEL: clone_name}


def purpose_selector(clone_name: str) -> str:
    """Return the label selector that matches `purpose_labels(clone_name)`."""
    labels = purpose_labels(clone_name)
    return str.join(",", [f"{k}={v}" for k, v in labels.items()])


def primary_pod_selector(cluster_name: str) -> str:
    kv: Tuple[Tuple[str, str], ...] = (
        (CLUSTER_LABEL, cluster_name),
        (DATA_LABEL, "postgres"),
        (ROLE_LABEL, "master"),
    )
    return str.join(",", [f"{k}={v}" for k, v in kv])


def verbose_backrest_configmap(namespace: str, clone_name: str) -> dict:
    """Return a ConfigMap that raises pgBackRest's timeout and log level."""
    content = str.join(
        "\n",
        ["[global]", "io-timeout=1800", "log-level-console=detail", ""],
    )
    cm = dict(
        apiVersion="v1",
        kind="ConfigMap",
        metadata=dict(
            name=VERBOSE_CONFIGMAP_NAME,
            namespace=namespace,
            labels=purpose_labels(clone_name),
        ),
        data={"additionalConfig.conf": content},
    )
    return cm
