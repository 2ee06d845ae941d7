"""Storage layer for ``Job`` objects."""

from typing import Any

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, V1Job
from structlog.stdlib import BoundLogger

from ...timeout import Timeout
from .namespaced import NamespacedObjectStorage

__all__ = ["JobStorage"]


class JobStorage(NamespacedObjectStorage):
    """Storage layer for ``Job`` objects.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        super().__init__(kind="Job", logger=logger)
        self._api = client.BatchV1Api(api_client)

    async def create(
        self, namespace: str, body: V1Job, timeout: Timeout
    ) -> V1Job:
        """Create a job, returning it with its generated name filled in.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        name = body.metadata.name or body.metadata.generate_name
        self._logger.debug("Creating Job", name=name, namespace=namespace)
        return await self._call(
            "Error creating object",
            timeout,
            self._api.create_namespaced_job,
            namespace,
            body,
            namespace=namespace,
            name=name,
        )

    async def list(
        self,
        namespace: str,
        timeout: Timeout,
        *,
        label_selector: str | None = None,
        limit: int | None = None,
    ) -> list[V1Job]:
        """List jobs in a namespace.

        Parameters
        ----------
        namespace
            Namespace to list.
        timeout
            Timeout on operation.
        label_selector
            If given, only return jobs matching this selector.
        limit
            If given, return at most this many jobs.

        Returns
        -------
        list of kubernetes_asyncio.client.models.V1Job
            Matching jobs.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        filters: dict[str, Any] = {}
        if label_selector:
            filters["label_selector"] = label_selector
        if limit:
            filters["limit"] = limit
        result = await self._call(
            "Error listing objects",
            timeout,
            self._api.list_namespaced_job,
            namespace,
            namespace=namespace,
            **filters,
        )
        return result.items
