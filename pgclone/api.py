import logging
import os
import re
import sys
from pathlib import Path
from typing import List, Tuple

import pydantic

import pgclone.k8s
from pgclone.backup import fetch_backup_catalog, show_backups
from pgclone.errors import CloneError, InvalidInput
from pgclone.executor import PodExecutor, kubectl_executor
from pgclone.generate import generate, parse_cluster
from pgclone.models import (
    BackupRequest,
    CloneConfig,
    CloneRequest,
    RecoveryKind,
    ReplicaRequest,
)
from pgclone.pitr import is_syntactically_valid, validate_pitr
from pgclone.replicas import update_all_replica_counts, update_replica_count
from pgclone.saga import CloneSaga
from pgclone.store import ObjectStore

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("pgclone")

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("", "0", "false", "no", "off")

# Values of `PGCLONE_ACTION`.
ACTIONS = ("clone", "replica-count", "show-backup")

# PGO only accepts these repository names in a data source.
REPO_NAME = re.compile(r"^repo[1-4]$")

Request = CloneRequest | ReplicaRequest | BackupRequest


def env_flag(name: str) -> bool:
    """Return the boolean value of environment variable `name`."""
    value = os.getenv(name, "").strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ValueError(name)


def compile_config() -> Tuple[CloneConfig, bool]:
    try:
        cfg = CloneConfig(
            kubeconfig=Path(os.getenv("KUBECONFIG", "")),
            kubecontext=os.getenv("KUBECONTEXT", ""),
            loglevel=os.getenv("PGCLONE_LOGLEVEL", "info"),
        )
        return cfg, False
    except (KeyError, ValueError) as e:
        logit.error("invalid environment variables", {"names": tuple(e.args)})
        return CloneConfig(kubeconfig=Path(""), kubecontext=""), True


def compile_request() -> Tuple[CloneRequest, bool]:
    try:
        req = CloneRequest(
            clusterName=os.environ["PGCLONE_CLUSTER"],
            namespace=os.environ["PGCLONE_NAMESPACE"],
            repoName=os.getenv("PGCLONE_REPO", ""),
            targetNamespace=os.getenv("PGCLONE_TARGET_NAMESPACE", ""),
            pitr=os.getenv("PGCLONE_PITR", ""),
            lastBackup=env_flag("PGCLONE_LAST_BACKUP"),
            overwriteExisting=env_flag("PGCLONE_OVERWRITE"),
            verboseBackrest=env_flag("PGCLONE_VERBOSE_BACKREST"),
        )
        return req, False
    except KeyError as e:
        logit.error("missing environment variables", {"names": tuple(e.args)})
    except ValueError as e:
        logit.error("invalid boolean environment variables", {"names": tuple(e.args)})
    return CloneRequest(clusterName="", namespace=""), True


def compile_replica_request() -> Tuple[ReplicaRequest, bool]:
    try:
        req = ReplicaRequest(
            replicas=int(os.environ["PGCLONE_REPLICAS"]),
            clusterName=os.getenv("PGCLONE_CLUSTER", ""),
            namespace=os.getenv("PGCLONE_NAMESPACE", ""),
            allClusters=env_flag("PGCLONE_ALL_CLUSTERS"),
        )
    except KeyError as e:
        logit.error("missing environment variables", {"names": tuple(e.args)})
        return ReplicaRequest(replicas=0), True
    except ValueError as e:
        logit.error("invalid environment variables", {"reason": str(e)})
        return ReplicaRequest(replicas=0), True

    if not req.allClusters and (req.clusterName == "" or req.namespace == ""):
        logit.error(
            "cannot guess which cluster to update: set PGCLONE_CLUSTER and "
            "PGCLONE_NAMESPACE or PGCLONE_ALL_CLUSTERS"
        )
        return req, True
    return req, False


def compile_backup_request() -> Tuple[BackupRequest, bool]:
    try:
        req = BackupRequest(
            clusterName=os.environ["PGCLONE_CLUSTER"],
            namespace=os.environ["PGCLONE_NAMESPACE"],
            repoName=os.getenv("PGCLONE_REPO", ""),
            output=os.getenv("PGCLONE_OUTPUT", "text"),
        )
        return req, False
    except KeyError as e:
        logit.error("missing environment variables", {"names": tuple(e.args)})
    except pydantic.ValidationError as e:
        logit.error("invalid environment variables", {"reason": str(e)})
    return BackupRequest(clusterName="", namespace=""), True


def compile_command() -> Tuple[Request, bool]:
    """Return the request for the action in `PGCLONE_ACTION` (default: clone)."""
    action = os.getenv("PGCLONE_ACTION", "clone")
    if action == "replica-count":
        return compile_replica_request()
    if action == "show-backup":
        return compile_backup_request()
    if action == "clone":
        return compile_request()

    logit.error("unknown action", {"action": action, "valid": ACTIONS})
    return CloneRequest(clusterName="", namespace=""), True


def validate_request(request: CloneRequest) -> None:
    """Reject malformed requests before we talk to K8s."""
    if not REPO_NAME.match(request.repoName):
        raise InvalidInput(
            f"invalid repository {request.repoName!r}: must be one of repo1-repo4"
        )

    if request.pitr != "" and request.lastBackup:
        raise InvalidInput("PITR and last backup are mutually exclusive")

    if request.pitr != "" and not is_syntactically_valid(request.pitr):
        raise InvalidInput(
            f"invalid PITR {request.pitr!r}: expected YYYY-MM-DD HH:MM:SS+TZ"
        )


async def clone_cluster(
    store: ObjectStore, executor: PodExecutor, request: CloneRequest
) -> dict:
    """Create a clone of the cluster in `request` and return its manifest.

    Nothing is created unless the request is valid, the repository exists and
    the PITR, if any, is covered by a full backup.

    """
    validate_request(request)

    manifest = await store.get("PostgresCluster", request.namespace, request.clusterName)
    source = parse_cluster(manifest)

    mode = request.recovery_mode()
    clone = generate(source, request.repoName, request.targetNamespace, mode)

    if mode.kind == RecoveryKind.TIME:
        catalog = await fetch_backup_catalog(
            store, executor, request.namespace, request.clusterName, request.repoName
        )
        validate_pitr(request.pitr, catalog)

    saga = CloneSaga(store, source, request, clone)
    return await saga.run()


async def change_replicas(store: ObjectStore, request: ReplicaRequest) -> List[str]:
    """Update the replica count in `request` and return the updated clusters."""
    if request.allClusters:
        return await update_all_replica_counts(store, request.namespace, request.replicas)

    await update_replica_count(
        store, request.namespace, request.clusterName, request.replicas
    )
    return [f"{request.namespace}/{request.clusterName}"]


async def run(store: ObjectStore, executor: PodExecutor, request: Request) -> None:
    """Execute the action that `request` describes."""
    if isinstance(request, ReplicaRequest):
        await change_replicas(store, request)
    elif isinstance(request, BackupRequest):
        report = await show_backups(
            store,
            executor,
            request.namespace,
            request.clusterName,
            request.repoName,
            request.output,
        )
        sys.stdout.write(report)
    else:
        await clone_cluster(store, executor, request)


async def main(cfg: CloneConfig, request: Request) -> bool:
    """Run the action and return the error flag."""
    k8scfg, err = pgclone.k8s.create_cluster_config(cfg.kubeconfig, cfg.kubecontext)
    if err:
        logit.error("cannot load kubeconfig", {"path": str(cfg.kubeconfig)})
        return True

    store = ObjectStore(k8scfg)
    kubeconfig = None if cfg.kubeconfig == Path("") else cfg.kubeconfig
    executor = kubectl_executor(kubeconfig, cfg.kubecontext)

    async with k8scfg.client:
        try:
            await run(store, executor, request)
        except CloneError as e:
            logit.error("action failed", {"reason": str(e), "type": type(e).__name__})
            return True
    return False
