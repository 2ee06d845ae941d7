"""Storage layer for Kubernetes node objects."""

from __future__ import annotations

from collections.abc import AsyncIterator

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, ApiException, V1Node
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...timeout import Timeout
from .watcher import KubernetesWatcher, WatchEvent

__all__ = ["NodeStorage"]


class NodeStorage:
    """Storage layer for Kubernetes node objects.

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

    async def list(
        self,
        timeout: Timeout,
        *,
        label_selector: str | None = None,
        limit: int | None = None,
    ) -> list[V1Node]:
        """Get data about Kubernetes nodes.

        Parameters
        ----------
        timeout
            Timeout for call.
        label_selector
            Label selector restricting the list of nodes of interest.
        limit
            Return at most this many nodes.

        Returns
        -------
        list of kubernetes_asyncio.client.models.V1Node
            List of node metadata.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        self._logger.debug("Getting node data", label_selector=label_selector)
        extra_args: dict[str, str | int] = {}
        if label_selector:
            extra_args["label_selector"] = label_selector
        if limit:
            extra_args["limit"] = limit
        try:
            async with timeout.enforce():
                nodes = await self._api.list_node(
                    _request_timeout=timeout.left(), **extra_args
                )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error reading node information", e, kind="Node"
            ) from e
        return nodes.items

    def watch(
        self, *, label_selector: str | None = None
    ) -> AsyncIterator[WatchEvent[V1Node]]:
        """Watch nodes until cancelled.

        Parameters
        ----------
        label_selector
            Only watch nodes matching this label selector.

        Returns
        -------
        collections.abc.AsyncIterator
            Iterator over node events, starting with an ``ADDED`` event for
            every existing node.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        watcher = KubernetesWatcher(
            method=self._api.list_node,
            object_type=V1Node,
            kind="Node",
            logger=self._logger,
            label_selector=label_selector,
        )
        return watcher.events()
