"""Decide which storage classes and nodes this provisioner is serving."""

from __future__ import annotations

from kubernetes_asyncio.client import V1StorageClass
from structlog.stdlib import BoundLogger

from ..constants import CONTROLLING_NODE_LABEL, PROVISIONER_NAME
from ..models.domain.storageclass import NodeAssignment, parse_node_assignment
from ..storage.kubernetes.storageclass import StorageClassStorage
from ..timeout import Timeout

__all__ = ["StorageClassResolver"]


class StorageClassResolver:
    """Resolve storage classes to the node that serves them.

    Parameters
    ----------
    storage
        Storage layer for storage classes.
    logger
        Logger to use.
    """

    def __init__(
        self, storage: StorageClassStorage, logger: BoundLogger
    ) -> None:
        self._storage = storage
        self._logger = logger

    def is_controlling(self, storage_class: V1StorageClass) -> bool:
        """Whether volumes of this storage class are provisioned by us."""
        return storage_class.provisioner == PROVISIONER_NAME

    def assigned_node(
        self, storage_class: V1StorageClass
    ) -> NodeAssignment | None:
        """Determine which node serves a storage class.

        Parameters
        ----------
        storage_class
            Storage class to check.

        Returns
        -------
        NodeAssignment or None
            Assignment taken from the controlling node label, or `None` if
            the storage class has no such label.
        """
        labels = storage_class.metadata.labels or {}
        value = labels.get(CONTROLLING_NODE_LABEL)
        if value is None:
            self._logger.warning(
                "Storage class has no controlling node label",
                storage_class=storage_class.metadata.name,
                label=CONTROLLING_NODE_LABEL,
            )
            return None
        return parse_node_assignment(value)

    async def is_controlling_name(self, name: str, timeout: Timeout) -> bool:
        """Whether the named storage class is provisioned by us.

        Parameters
        ----------
        name
            Name of the storage class.
        timeout
            Timeout on operation.

        Returns
        -------
        bool
            `True` if the storage class exists and names this provisioner.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        storage_class = await self._storage.read(name, timeout)
        if not storage_class:
            self._logger.debug("Storage class not found", storage_class=name)
            return False
        return self.is_controlling(storage_class)

    async def get_assignment(
        self, name: str, timeout: Timeout
    ) -> NodeAssignment | None:
        """Determine which node serves the named storage class.

        Parameters
        ----------
        name
            Name of the storage class.
        timeout
            Timeout on operation.

        Returns
        -------
        NodeAssignment or None
            Node assignment, or `None` if the storage class does not exist
            or is not labeled.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        storage_class = await self._storage.read(name, timeout)
        if not storage_class:
            self._logger.warning("Storage class not found", storage_class=name)
            return None
        return self.assigned_node(storage_class)
