"""Storage layer for ``PersistentVolumeClaim`` objects."""

from collections.abc import AsyncIterator

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, V1PersistentVolumeClaim
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...timeout import Timeout
from .namespaced import NamespacedObjectStorage
from .watcher import KubernetesWatcher, WatchEvent

__all__ = ["PersistentVolumeClaimStorage"]


class PersistentVolumeClaimStorage(NamespacedObjectStorage):
    """Storage layer for ``PersistentVolumeClaim`` objects.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        super().__init__(kind="PersistentVolumeClaim", logger=logger)
        self._api = client.CoreV1Api(api_client)

    async def read(
        self, name: str, namespace: str, timeout: Timeout
    ) -> V1PersistentVolumeClaim | None:
        """Read a claim, returning `None` if it does not exist.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server other than
            not found.
        """
        try:
            return await self._call(
                "Error reading object",
                timeout,
                self._api.read_namespaced_persistent_volume_claim,
                name,
                namespace,
                namespace=namespace,
                name=name,
            )
        except KubernetesError as e:
            if e.status == 404:
                return None
            raise

    def watch(self) -> AsyncIterator[WatchEvent[V1PersistentVolumeClaim]]:
        """Watch claims in all namespaces until cancelled.

        Returns
        -------
        collections.abc.AsyncIterator
            Iterator over claim events, starting with an ``ADDED`` event for
            every existing claim.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        watcher = KubernetesWatcher(
            method=self._api.list_persistent_volume_claim_for_all_namespaces,
            object_type=V1PersistentVolumeClaim,
            kind=self._kind,
            logger=self._logger,
        )
        return watcher.events()
