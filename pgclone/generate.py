import copy
import logging

import pydantic
import yaml

from pgclone.defaults import CLONE_NAME_PREFIX, MAX_NAME_LENGTH
from pgclone.errors import InvalidInput, InvalidRepository
from pgclone.filtering import filter_annotations, filter_labels
from pgclone.models import (
    DataSourceDescriptor,
    PgBackrestConfigRef,
    PostgresCluster,
    RecoveryKind,
    RecoveryMode,
)
from pgclone.pitr import is_syntactically_valid
from pgclone.projection import project

logit = logging.getLogger("pgclone")


def parse_cluster(manifest: dict) -> PostgresCluster:
    """Validate the raw PostgresCluster `manifest` once, at ingestion."""
    try:
        return PostgresCluster.model_validate(manifest)
    except pydantic.ValidationError as err:
        logit.error("invalid PostgresCluster manifest", {"reason": str(err)})
        raise InvalidInput(f"invalid PostgresCluster manifest: {err}")


def clone_name(source_name: str) -> str:
    """Return the name of the clone of `source_name`.

    Long names are truncated to remain valid K8s names. We do not check
    whether the name is taken, K8s will reject the clone if it is.

    """
    name = f"{CLONE_NAME_PREFIX}{source_name}"[:MAX_NAME_LENGTH]
    return name.rstrip("-")


def repo_exists(source: PostgresCluster, repo_name: str) -> bool:
    return repo_name in source.repo_names()


def restore_options(mode: RecoveryMode) -> list | None:
    """Return the pgBackRest restore options for the recovery `mode`."""
    if mode.kind == RecoveryKind.IMMEDIATE:
        return ["--type=immediate"]
    if mode.kind == RecoveryKind.TIME:
        return ["--type=time", f'--target="{mode.target}"']
    return None


def data_source(
    source: PostgresCluster, repo_name: str, target_namespace: str, mode: RecoveryMode
) -> dict:
    """Return the `spec.dataSource` section that restores from `source`."""
    descriptor = DataSourceDescriptor(
        clusterName=source.metadata.name,
        repoName=repo_name,
        options=restore_options(mode),
    )

    # Clones in the same namespace do not need to address the source namespace.
    if target_namespace != "":
        descriptor.clusterNamespace = source.metadata.namespace

    return {"postgresCluster": descriptor.model_dump(exclude_none=True)}


def generate(
    source: PostgresCluster, repo_name: str, target_namespace: str, mode: RecoveryMode
) -> dict:
    """Return the manifest of a clone of `source`.

    The clone restores from the `repo_name` repository of `source` and uses
    a single local repository for its own backups. An empty
    `target_namespace` puts the clone next to its source.

    This function has no side effects.

    """
    if repo_name != "" and not repo_exists(source, repo_name):
        raise InvalidRepository(
            f"{repo_name!r} is not a valid repo for cluster "
            f"{source.metadata.namespace}/{source.metadata.name}"
        )

    if mode.kind == RecoveryKind.TIME and not is_syntactically_valid(mode.target):
        raise InvalidInput(f"invalid PITR {mode.target!r}")

    spec = project(source)
    spec["dataSource"] = data_source(source, repo_name, target_namespace, mode)

    manifest = dict(
        apiVersion=source.apiVersion,
        kind=source.kind,
        metadata=dict(
            name=clone_name(source.metadata.name),
            namespace=target_namespace or source.metadata.namespace,
            labels=filter_labels(source.metadata.labels),
            annotations=filter_annotations(source.metadata.annotations),
        ),
        spec=spec,
    )

    logit.debug("generated clone manifest\n" + yaml.safe_dump(manifest))
    return manifest


def add_configmap_reference(clone: dict, name: str) -> dict:
    """Return a copy of `clone` that also mounts the ConfigMap `name` into pgBackRest."""
    out = copy.deepcopy(clone)
    pgbackrest = out["spec"]["backups"]["pgbackrest"]
    configuration = pgbackrest.setdefault("configuration", [])

    ref = PgBackrestConfigRef.model_validate({"configMap": {"name": name}})
    entry = ref.model_dump(exclude_none=True)
    if entry not in configuration:
        configuration.append(entry)
    return out
