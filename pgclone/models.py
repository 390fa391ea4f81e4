from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ----------------------------------------------------------------------
# Kubernetes
# ----------------------------------------------------------------------


class K8sMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    namespace: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}


class K8sObjectRef(BaseModel):
    """Reference to a ConfigMap or Secret inside a projected volume source."""

    model_config = ConfigDict(extra="allow")

    name: str


class K8sResource(BaseModel):
    """API location of one resource kind."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: str
    kind: str
    plural: str
    namespaced: bool = True


def factory_K8sResources() -> Dict[str, K8sResource]:
    """Return all the resource kinds the clone core reads or writes."""
    data = dict(
        Namespace=K8sResource(
            apiVersion="v1", kind="Namespace", plural="namespaces", namespaced=False
        ),
        Pod=K8sResource(apiVersion="v1", kind="Pod", plural="pods"),
        ConfigMap=K8sResource(apiVersion="v1", kind="ConfigMap", plural="configmaps"),
        Secret=K8sResource(apiVersion="v1", kind="Secret", plural="secrets"),
        NetworkPolicy=K8sResource(
            apiVersion="networking.k8s.io/v1",
            kind="NetworkPolicy",
            plural="networkpolicies",
        ),
        CiliumNetworkPolicy=K8sResource(
            apiVersion="cilium.io/v2",
            kind="CiliumNetworkPolicy",
            plural="ciliumnetworkpolicies",
        ),
        PostgresCluster=K8sResource(
            apiVersion="postgres-operator.crunchydata.com/v1beta1",
            kind="PostgresCluster",
            plural="postgresclusters",
        ),
    )
    return data


# ----------------------------------------------------------------------
# PostgresCluster.
#
# Only the fields the clone core needs are typed. Everything else passes
# through untouched thanks to `extra="allow"` and must be dumped with
# `exclude_unset=True` and `by_alias=True` to reproduce the input.
# ----------------------------------------------------------------------


class PgBackrestRepo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    schedules: Dict[str, str] | None = None


class PgBackrestConfigRef(BaseModel):
    """One entry of `spec.backups.pgbackrest.configuration`."""

    model_config = ConfigDict(extra="allow")

    configMap: K8sObjectRef | None = None
    secret: K8sObjectRef | None = None


class PgBackrest(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    repos: List[PgBackrestRepo] = Field(min_length=1)
    global_: Dict[str, Any] | None = Field(default=None, alias="global")
    configuration: List[PgBackrestConfigRef] | None = None
    manual: Dict[str, Any] | None = None


class Backups(BaseModel):
    model_config = ConfigDict(extra="allow")

    pgbackrest: PgBackrest


class InstanceSet(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    replicas: int | None = None
    resources: Any = None
    sidecars: Any = None
    dataVolumeClaimSpec: Any = None


class PostgresClusterSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    instances: List[InstanceSet] = Field(min_length=1)
    backups: Backups
    metadata: K8sMetadata | None = None


class PostgresCluster(BaseModel):
    model_config = ConfigDict(extra="allow")

    apiVersion: str
    kind: str
    metadata: K8sMetadata
    spec: PostgresClusterSpec

    @field_validator("metadata")
    @classmethod
    def named(cls, v: K8sMetadata) -> K8sMetadata:
        if len(v.name) == 0:
            raise ValueError("cluster must have a name")
        return v

    def repo_names(self) -> List[str]:
        return [_.name for _ in self.spec.backups.pgbackrest.repos]


class DataSourceDescriptor(BaseModel):
    """Content of `spec.dataSource.postgresCluster` of a clone."""

    model_config = ConfigDict(extra="forbid")

    clusterName: str
    repoName: str
    clusterNamespace: str | None = None
    options: List[str] | None = None


# ----------------------------------------------------------------------
# pgBackRest backup catalog (`pgbackrest info --output=json`).
# ----------------------------------------------------------------------


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incr"
    DIFFERENTIAL = "diff"


class BackupTimestamps(BaseModel):
    start: int
    stop: int


class BackupCatalogEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: str
    type: BackupType
    error: bool = False
    timestamp: BackupTimestamps
    prior: str | None = None
    reference: List[str] | None = None


class BackupInfo(BaseModel):
    """One stanza of the catalog. The clone core only uses `backup`."""

    model_config = ConfigDict(extra="allow")

    archive: List[dict] = []
    backup: List[BackupCatalogEntry] = []


# ----------------------------------------------------------------------
# Clone Requests and Saga Bookkeeping.
# ----------------------------------------------------------------------


class DependencyReference(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["configmap", "secret"]
    name: str


class NetworkRuleRef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: str
    namespace: str
    name: str


class ReplicationLedger(BaseModel):
    """Everything one saga run created and must remove again on failure."""

    model_config = ConfigDict(extra="forbid")

    createdNamespace: str = ""
    createdConfigMaps: List[str] = []
    createdSecrets: List[str] = []
    createdNetworkRules: List[NetworkRuleRef] = []


class RecoveryKind(str, Enum):
    NONE = "none"
    IMMEDIATE = "immediate"
    TIME = "time"


class RecoveryMode(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: RecoveryKind = RecoveryKind.NONE

    # PITR text, only meaningful for `RecoveryKind.TIME`.
    target: str = ""


class CloneRequest(BaseModel):
    """Everything the user asked for in one invocation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    clusterName: str
    namespace: str
    repoName: str = ""

    # Empty means: clone into the namespace of the source cluster.
    targetNamespace: str = ""

    pitr: str = ""
    lastBackup: bool = False
    overwriteExisting: bool = False
    verboseBackrest: bool = False

    def recovery_mode(self) -> RecoveryMode:
        if self.lastBackup:
            return RecoveryMode(kind=RecoveryKind.IMMEDIATE)
        if self.pitr != "":
            return RecoveryMode(kind=RecoveryKind.TIME, target=self.pitr)
        return RecoveryMode()

    def is_cross_namespace(self) -> bool:
        return self.targetNamespace not in ("", self.namespace)

    def effective_namespace(self) -> str:
        return self.targetNamespace or self.namespace


class ReplicaRequest(BaseModel):
    """Set the replicas of one cluster or of all clusters."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    replicas: int
    clusterName: str = ""

    # With `allClusters` an empty namespace means every namespace.
    namespace: str = ""
    allClusters: bool = False


class BackupRequest(BaseModel):
    """Show the pgBackRest backup catalog of a cluster."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    clusterName: str
    namespace: str

    # Empty means: all repositories.
    repoName: str = ""
    output: Literal["text", "json"] = "text"


class CloneConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kubeconfig: Path
    kubecontext: str
    loglevel: str = "info"
