"""Reconciliation loop that dispatches provisioner jobs.

The controller watches persistent volume claims, persistent volumes, and
nodes, and reacts to changes by dispatching jobs that run on the affected
node. All of the work that touches the btrfs filesystem happens in those
jobs; the controller only decides which job to run where.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from kubernetes_asyncio.client import (
    V1Node,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
)
from structlog.stdlib import BoundLogger

from ..config import Config
from ..constants import (
    CONTROLLING_NODE_LABEL,
    FINALIZER_NAME,
    NODE_HOSTNAME_LABEL,
    WATCH_RETRY_DELAY,
)
from ..exceptions import UnsupportedAssignmentError
from ..models.domain.jobs import DeleteJob, InitializeNodeJob, ProvisionJob
from ..models.domain.kubernetes import (
    PersistentVolumeClaimPhase,
    WatchEventType,
)
from ..models.domain.storageclass import (
    DynamicAssignment,
    SingleNodeAssignment,
)
from ..storage.kubernetes.node import NodeStorage
from ..storage.kubernetes.pv import PersistentVolumeStorage
from ..storage.kubernetes.pvc import PersistentVolumeClaimStorage
from ..storage.kubernetes.storageclass import StorageClassStorage
from ..storage.kubernetes.watcher import WatchEvent
from ..timeout import Timeout
from .jobs import JobDispatcher
from .storageclass import StorageClassResolver

__all__ = ["Controller"]


def _get_affinity_hostname(volume: V1PersistentVolume) -> str | None:
    """Find the node hostname a persistent volume is pinned to.

    Only the first node selector term is considered, matching the volumes
    created by the provisioner.
    """
    affinity = volume.spec.node_affinity if volume.spec else None
    if not affinity or not affinity.required:
        return None
    terms = affinity.required.node_selector_terms or []
    if not terms:
        return None
    for requirement in terms[0].match_expressions or []:
        if requirement.key != NODE_HOSTNAME_LABEL:
            continue
        if requirement.operator == "In" and requirement.values:
            return requirement.values[0]
    return None


class Controller:
    """Watch Kubernetes and dispatch provisioner jobs.

    Each watched collection is read by its own task, which feeds a single
    queue. Events are handled one at a time by a single consumer, so the
    sets of claims and volumes already seen need no locking. Later events
    for a volume already seen are skipped without any API call unless its
    deletion has been requested.

    Those sets only live as long as the process. After a restart, the
    watches replay the current state of every object and the labels on
    dispatched jobs prevent a job from being dispatched twice.

    Parameters
    ----------
    config
        Provisioner configuration.
    resolver
        Resolver for storage class ownership.
    dispatcher
        Dispatcher for provisioner jobs.
    pvc_storage
        Storage layer for persistent volume claims.
    pv_storage
        Storage layer for persistent volumes.
    node_storage
        Storage layer for nodes.
    storage_class_storage
        Storage layer for storage classes.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        config: Config,
        resolver: StorageClassResolver,
        dispatcher: JobDispatcher,
        pvc_storage: PersistentVolumeClaimStorage,
        pv_storage: PersistentVolumeStorage,
        node_storage: NodeStorage,
        storage_class_storage: StorageClassStorage,
        logger: BoundLogger,
    ) -> None:
        self._config = config
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._pvc_storage = pvc_storage
        self._pv_storage = pv_storage
        self._node_storage = node_storage
        self._storage_class_storage = storage_class_storage
        self._logger = logger

        self._seen_claims: set[str] = set()
        self._seen_volumes: set[str] = set()

    async def run(self) -> None:
        """Watch Kubernetes and handle events until cancelled.

        Raises
        ------
        UnsupportedAssignmentError
            Raised if dynamic storage classes are enabled in the
            configuration.
        """
        if self._config.dynamic_storage_class_enabled:
            raise UnsupportedAssignmentError

        queue: asyncio.Queue[WatchEvent[Any]] = asyncio.Queue()
        node_selector = self._config.node_label_selector
        self._logger.info("Starting controller")
        async with asyncio.TaskGroup() as tg:
            tg.create_task(
                self._produce(
                    "persistent volume claims", self._pvc_storage.watch, queue
                )
            )
            tg.create_task(
                self._produce(
                    "persistent volumes", self._pv_storage.watch, queue
                )
            )
            tg.create_task(
                self._produce(
                    "nodes",
                    lambda: self._node_storage.watch(
                        label_selector=node_selector
                    ),
                    queue,
                )
            )
            tg.create_task(self._consume(queue))

    async def handle_event(self, event: WatchEvent[Any]) -> None:
        """Handle one watch event, logging any failure.

        Parameters
        ----------
        event
            Event from one of the watches.
        """
        obj = event.object
        logger = self._logger.bind(
            action=event.action.value,
            kind=type(obj).__name__,
            name=obj.metadata.name,
            namespace=obj.metadata.namespace,
        )
        try:
            if isinstance(obj, V1PersistentVolumeClaim):
                await self.handle_claim_event(event)
            elif isinstance(obj, V1PersistentVolume):
                await self.handle_volume_event(event)
            elif isinstance(obj, V1Node):
                await self.handle_node_event(event)
            else:
                logger.warning("Ignoring event for unknown object")
        except Exception:
            logger.exception("Error handling event")

    async def handle_claim_event(
        self, event: WatchEvent[V1PersistentVolumeClaim]
    ) -> None:
        """Dispatch provisioning jobs for new pending claims.

        Parameters
        ----------
        event
            Claim watch event.

        Raises
        ------
        ControllerTimeoutError
            Raised if Kubernetes did not answer in time.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        UnsupportedAssignmentError
            Raised if the storage class of the claim uses dynamic node
            assignment.
        """
        claim = event.object
        uid = claim.metadata.uid
        if event.action == WatchEventType.DELETED:
            self._seen_claims.discard(uid)
            return
        if not uid or uid in self._seen_claims:
            return
        storage_class = claim.spec.storage_class_name if claim.spec else None
        phase = claim.status.phase if claim.status else None
        if not storage_class or not phase:
            return
        timeout = Timeout("Handle claim", self._config.kubernetes_timeout)
        if not await self._resolver.is_controlling_name(
            storage_class, timeout
        ):
            return

        namespace = claim.metadata.namespace or "default"
        name = claim.metadata.name
        logger = self._logger.bind(claim=f"{namespace}/{name}")
        if phase == PersistentVolumeClaimPhase.BOUND.value:
            self._seen_claims.add(uid)
            logger.debug("Claim is bound")
            return
        if phase != PersistentVolumeClaimPhase.PENDING.value:
            return

        logger.info("Claim is pending")
        self._seen_claims.add(uid)
        assignment = await self._resolver.get_assignment(
            storage_class, timeout
        )
        match assignment:
            case None:
                logger.warning(
                    "No node assigned to storage class",
                    storage_class=storage_class,
                )
            case DynamicAssignment():
                raise UnsupportedAssignmentError(storage_class)
            case SingleNodeAssignment(node_name=node_name):
                await self._dispatcher.dispatch(
                    ProvisionJob(claim_uid=uid),
                    node_name=node_name,
                    name="provision-volume",
                    args=["provision", namespace, name],
                    timeout=timeout,
                )

    async def handle_node_event(self, event: WatchEvent[V1Node]) -> None:
        """Dispatch initialization jobs for nodes without a storage class.

        Parameters
        ----------
        event
            Node watch event.

        Raises
        ------
        ControllerTimeoutError
            Raised if Kubernetes did not answer in time.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        node = event.object
        uid = node.metadata.uid
        name = node.metadata.name
        if event.action == WatchEventType.DELETED or not uid:
            return
        timeout = Timeout("Handle node", self._config.kubernetes_timeout)
        existing = await self._storage_class_storage.list(
            timeout,
            label_selector=f"{CONTROLLING_NODE_LABEL}={name}",
            limit=1,
        )
        if existing:
            self._logger.debug(
                "Node already has a storage class",
                node=name,
                storage_class=existing[0].metadata.name,
            )
            return
        self._logger.info("Initializing node", node=name)
        await self._dispatcher.dispatch(
            InitializeNodeJob(node_uid=uid),
            node_name=name,
            name="initialize-node",
            args=["initialize-node"],
            timeout=timeout,
        )

    async def handle_volume_event(
        self, event: WatchEvent[V1PersistentVolume]
    ) -> None:
        """Dispatch deletion jobs for volumes whose deletion was requested.

        Parameters
        ----------
        event
            Persistent volume watch event.

        Raises
        ------
        ControllerTimeoutError
            Raised if Kubernetes did not answer in time.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        volume = event.object
        uid = volume.metadata.uid
        if event.action == WatchEventType.DELETED:
            self._seen_volumes.discard(uid)
            return
        storage_class = volume.spec.storage_class_name if volume.spec else None
        if not uid or not storage_class:
            return
        deleting = volume.metadata.deletion_timestamp is not None
        if uid in self._seen_volumes and not deleting:
            return
        timeout = Timeout("Handle volume", self._config.kubernetes_timeout)
        if not await self._resolver.is_controlling_name(
            storage_class, timeout
        ):
            return

        name = volume.metadata.name
        logger = self._logger.bind(volume=name)
        if not deleting:
            self._seen_volumes.add(uid)
            return
        if FINALIZER_NAME not in (volume.metadata.finalizers or []):
            return

        hostname = _get_affinity_hostname(volume)
        if not hostname:
            msg = (
                "Volume is being deleted but has no node affinity, cannot"
                " schedule deletion job"
            )
            logger.error(msg)
            self._seen_volumes.add(uid)
            return
        selector = f"{NODE_HOSTNAME_LABEL}={hostname}"
        nodes = await self._node_storage.list(
            timeout, label_selector=selector, limit=1
        )
        if not nodes:
            logger.warning("Cannot find node of volume", hostname=hostname)
            return
        node_name = nodes[0].metadata.name
        logger.info("Volume is being deleted", node=node_name)
        await self._dispatcher.dispatch(
            DeleteJob(volume_uid=uid),
            node_name=node_name,
            name="delete-volume",
            args=["delete", name],
            timeout=timeout,
        )

    async def _consume(self, queue: asyncio.Queue[WatchEvent[Any]]) -> None:
        """Handle events from the queue, one at a time, forever."""
        while True:
            event = await queue.get()
            await self.handle_event(event)
            queue.task_done()

    async def _produce(
        self,
        description: str,
        watch: Callable[[], AsyncIterator[WatchEvent[Any]]],
        queue: asyncio.Queue[WatchEvent[Any]],
    ) -> None:
        """Copy events from a watch to the queue, restarting on failure.

        Parameters
        ----------
        description
            What is being watched, for logging.
        watch
            Function starting the watch.
        queue
            Queue to which to add the events.
        """
        delay = WATCH_RETRY_DELAY.total_seconds()
        while True:
            try:
                async for event in watch():
                    await queue.put(event)
            except Exception:
                msg = f"Error watching {description}, retrying in {delay}s"
                self._logger.exception(msg)
            else:
                msg = f"Watch of {description} ended, retrying in {delay}s"
                self._logger.warning(msg)
            await asyncio.sleep(delay)
