"""Storage layer for ``PersistentVolume`` objects."""

from __future__ import annotations

from collections.abc import AsyncIterator

from kubernetes_asyncio import client
from kubernetes_asyncio.client import (
    ApiClient,
    ApiException,
    V1PersistentVolume,
)
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...timeout import Timeout
from .watcher import KubernetesWatcher, WatchEvent

__all__ = ["PersistentVolumeStorage"]


class PersistentVolumeStorage:
    """Storage layer for ``PersistentVolume`` objects.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        self._api = client.CoreV1Api(api_client)
        self._logger = logger

    async def create(
        self, body: V1PersistentVolume, timeout: Timeout
    ) -> V1PersistentVolume:
        """Create a new persistent volume.

        Parameters
        ----------
        body
            Persistent Volume object to create.
        timeout
            Timeout on operation.

        Returns
        -------
        kubernetes_asyncio.client.models.V1PersistentVolume
            Persistent volume as created by Kubernetes.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        name = body.metadata.name
        self._logger.debug("Creating Persistent Volume", name=name)
        try:
            async with timeout.enforce():
                return await self._api.create_persistent_volume(
                    body, _request_timeout=timeout.left()
                )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error creating persistent volume",
                e,
                kind="PersistentVolume",
                name=name,
            ) from e

    async def read(
        self, name: str, timeout: Timeout
    ) -> V1PersistentVolume | None:
        """Read a persistent volume.

        Parameters
        ----------
        name
            Name of the persistent volume.
        timeout
            Timeout on operation.

        Returns
        -------
        kubernetes_asyncio.client.models.V1PersistentVolume or None
            PersistentVolume, or `None` if it does not exist.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        try:
            async with timeout.enforce():
                return await self._api.read_persistent_volume(
                    name, _request_timeout=timeout.left()
                )
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesError.from_exception(
                "Error reading persistent volume",
                e,
                kind="PersistentVolume",
                name=name,
            ) from e

    async def remove_finalizer(
        self, name: str, index: int, finalizer: str, timeout: Timeout
    ) -> None:
        """Remove one finalizer from a persistent volume.

        The finalizer is addressed by its position in the list. The patch
        first tests that the expected finalizer is still at that position so
        that a concurrent change to the list makes the patch fail instead of
        removing some other finalizer.

        Parameters
        ----------
        name
            Name of the persistent volume.
        index
            Index of the finalizer in ``metadata.finalizers``.
        finalizer
            Expected finalizer at that index.
        timeout
            Timeout on operation.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server, including
            a failed test of the finalizer value.
        """
        path = f"/metadata/finalizers/{index}"
        patch = [
            {"op": "test", "path": path, "value": finalizer},
            {"op": "remove", "path": path},
        ]
        self._logger.debug(
            "Removing finalizer", name=name, finalizer=finalizer, index=index
        )
        try:
            async with timeout.enforce():
                await self._api.patch_persistent_volume(
                    name, patch, _request_timeout=timeout.left()
                )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error removing finalizer",
                e,
                kind="PersistentVolume",
                name=name,
            ) from e

    def watch(self) -> AsyncIterator[WatchEvent[V1PersistentVolume]]:
        """Watch persistent volumes until cancelled.

        Returns
        -------
        collections.abc.AsyncIterator
            Iterator over persistent volume events, starting with an
            ``ADDED`` event for every existing volume.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        watcher = KubernetesWatcher(
            method=self._api.list_persistent_volume,
            object_type=V1PersistentVolume,
            kind="PersistentVolume",
            logger=self._logger,
        )
        return watcher.events()
