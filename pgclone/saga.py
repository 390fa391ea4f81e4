"""Create a clone and everything it needs, or nothing at all.

The saga runs these steps in order:

1. create the target namespace if it does not exist yet,
2. copy the ConfigMaps and Secrets of the source cluster,
3. create the verbose pgBackRest ConfigMap if requested,
4. open up network policies between source and clone,
5. create the clone.

Steps 1, 2 and 4 only run if the clone lives in a different namespace than
its source. If a step fails, the saga deletes the copied dependencies, then the
network rules, then the namespace it created, and raises the original error.
"""

import logging
from enum import Enum

from pgclone.defaults import purpose_labels, verbose_backrest_configmap
from pgclone.errors import CloneError, NotFound
from pgclone.generate import add_configmap_reference
from pgclone.models import CloneRequest, PostgresCluster, ReplicationLedger
from pgclone.netpol import inject_if_needed, remove_network_rules
from pgclone.replicate import (
    delete_configmaps,
    delete_secrets,
    ensure_configmap,
    replicate,
)
from pgclone.store import ObjectStore

logit = logging.getLogger("pgclone")


class SagaState(str, Enum):
    INIT = "init"
    DEPENDENCIES_REPLICATED = "dependencies-replicated"
    NETWORK_RULES_INJECTED = "network-rules-injected"
    CLONE_CREATED = "clone-created"
    DONE = "done"
    ROLLING_BACK = "rolling-back"
    FAILED = "failed"


class CloneSaga:
    """One attempt to materialize the `clone` manifest of `source`.

    Usage:

    saga = CloneSaga(store, source, request, clone)
    created = await saga.run()

    `saga.ledger` lists everything the saga created and `saga.state` shows how
    far it got.

    """

    def __init__(
        self,
        store: ObjectStore,
        source: PostgresCluster,
        request: CloneRequest,
        clone: dict,
    ):
        self.store = store
        self.source = source
        self.request = request
        self.clone = clone

        self.state = SagaState.INIT
        self.ledger = ReplicationLedger()

        # Set once we started to create network rules.
        self.rules_touched = False

    @property
    def clone_name(self) -> str:
        return self.clone["metadata"]["name"]

    @property
    def source_namespace(self) -> str:
        return self.source.metadata.namespace

    @property
    def target_namespace(self) -> str:
        return self.clone["metadata"]["namespace"]

    async def run(self) -> dict:
        """Return the created clone or raise the error of the failed step."""
        try:
            return await self._forward()
        except CloneError as err:
            logit.error(
                f"cannot create clone {self.target_namespace}/{self.clone_name}",
                {"reason": str(err), "state": self.state.value},
            )
            await self.rollback()
            raise

    async def _forward(self) -> dict:
        clone = self.clone
        cross_namespace = self.request.is_cross_namespace()

        if cross_namespace:
            await self.ensure_namespace()
            cms, secrets = await replicate(
                self.store,
                self.source,
                self.source_namespace,
                self.target_namespace,
                self.request.overwriteExisting,
                self.clone_name,
            )
            self.ledger.createdConfigMaps.extend(cms)
            self.ledger.createdSecrets.extend(secrets)
        self.state = SagaState.DEPENDENCIES_REPLICATED

        if self.request.verboseBackrest:
            cm = verbose_backrest_configmap(self.target_namespace, self.clone_name)
            created = await ensure_configmap(
                self.store, self.target_namespace, cm, self.request.overwriteExisting
            )
            if created:
                self.ledger.createdConfigMaps.append(cm["metadata"]["name"])
            clone = add_configmap_reference(clone, cm["metadata"]["name"])

        if cross_namespace:
            self.rules_touched = True
            refs = await inject_if_needed(
                self.store, self.source, self.clone_name, self.target_namespace
            )
            self.ledger.createdNetworkRules.extend(refs)
        self.state = SagaState.NETWORK_RULES_INJECTED

        ret = await self.store.create("PostgresCluster", self.target_namespace, clone)
        self.state = SagaState.CLONE_CREATED

        logit.info(f"created clone {self.target_namespace}/{self.clone_name}")
        self.state = SagaState.DONE
        return ret

    async def ensure_namespace(self) -> None:
        """Create the target namespace unless it exists already."""
        name = self.target_namespace
        try:
            await self.store.get("Namespace", "", name)
            return
        except NotFound:
            pass

        manifest = dict(
            apiVersion="v1",
            kind="Namespace",
            metadata=dict(name=name, labels=purpose_labels(self.clone_name)),
        )
        await self.store.create("Namespace", "", manifest)
        self.ledger.createdNamespace = name

    async def rollback(self) -> None:
        """Undo all steps that completed.

        Dependencies go first, then the network rules, then the namespace.

        Every step is best effort. Errors are logged and the remaining steps
        still run.

        """
        self.state = SagaState.ROLLING_BACK
        ledger = self.ledger

        await delete_secrets(self.store, ledger.createdSecrets, self.target_namespace)
        await delete_configmaps(self.store, ledger.createdConfigMaps, self.target_namespace)

        if self.rules_touched:
            await remove_network_rules(
                self.store,
                [self.target_namespace, self.source_namespace],
                self.clone_name,
            )

        if ledger.createdNamespace != "":
            try:
                await self.store.delete("Namespace", "", ledger.createdNamespace)
            except CloneError as err:
                logit.error(
                    f"cannot delete namespace {ledger.createdNamespace}",
                    {"reason": str(err)},
                )

        self.state = SagaState.FAILED
