"""Storage layer for ``StorageClass`` objects."""

from __future__ import annotations

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, ApiException, V1StorageClass
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...timeout import Timeout

__all__ = ["StorageClassStorage"]


class StorageClassStorage:
    """Storage layer for ``StorageClass`` objects.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        self._api = client.StorageV1Api(api_client)
        self._logger = logger

    async def create(
        self, body: V1StorageClass, timeout: Timeout
    ) -> V1StorageClass:
        """Create a new storage class.

        Parameters
        ----------
        body
            Storage class to create.
        timeout
            Timeout on operation.

        Returns
        -------
        kubernetes_asyncio.client.models.V1StorageClass
            Storage class as created by Kubernetes.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        name = body.metadata.name
        self._logger.debug("Creating storage class", name=name)
        try:
            async with timeout.enforce():
                return await self._api.create_storage_class(
                    body, _request_timeout=timeout.left()
                )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error creating storage class",
                e,
                kind="StorageClass",
                name=name,
            ) from e

    async def list(
        self,
        timeout: Timeout,
        *,
        label_selector: str | None = None,
        limit: int | None = None,
    ) -> list[V1StorageClass]:
        """List storage classes.

        Parameters
        ----------
        timeout
            Timeout on operation.
        label_selector
            Only return storage classes matching this label selector.
        limit
            Return at most this many storage classes.

        Returns
        -------
        list of kubernetes_asyncio.client.models.V1StorageClass
            Matching storage classes.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        extra_args: dict[str, str | int] = {}
        if label_selector:
            extra_args["label_selector"] = label_selector
        if limit:
            extra_args["limit"] = limit
        try:
            async with timeout.enforce():
                objs = await self._api.list_storage_class(
                    _request_timeout=timeout.left(), **extra_args
                )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error listing storage classes", e, kind="StorageClass"
            ) from e
        return objs.items

    async def read(
        self, name: str, timeout: Timeout
    ) -> V1StorageClass | None:
        """Read a storage class.

        Parameters
        ----------
        name
            Name of the storage class.
        timeout
            Timeout on operation.

        Returns
        -------
        kubernetes_asyncio.client.models.V1StorageClass or None
            Storage class, or `None` if it does not exist.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        try:
            async with timeout.enforce():
                return await self._api.read_storage_class(
                    name, _request_timeout=timeout.left()
                )
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesError.from_exception(
                "Error reading storage class",
                e,
                kind="StorageClass",
                name=name,
            ) from e
