"""Shared storage layer for namespaced Kubernetes objects."""

from collections.abc import Awaitable, Callable
from typing import Any

from kubernetes_asyncio.client import ApiException
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...timeout import Timeout

__all__ = ["NamespacedObjectStorage"]


class NamespacedObjectStorage:
    """Base class for storage of one kind of namespaced object.

    Kind-specific subclasses implement only the operations the provisioner
    needs for their kind, routing each API call through `_call` so that it
    is bounded by a `Timeout` and API failures surface as `KubernetesError`.

    Parameters
    ----------
    kind
        Kubernetes kind, for logs and errors.
    logger
        Logger to use.
    """

    def __init__(self, *, kind: str, logger: BoundLogger) -> None:
        self._kind = kind
        self._logger = logger

    async def _call(
        self,
        message: str,
        timeout: Timeout,
        method: Callable[..., Awaitable[Any]],
        *args: Any,
        namespace: str,
        name: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """Call an API method under the timeout, converting exceptions.

        Parameters
        ----------
        message
            Summary used if the call fails.
        timeout
            Timeout on operation.
        method
            Bound API method to call.
        *args
            Positional arguments to the method.
        namespace
            Namespace of the object, for errors.
        name
            Name of the object, if known, for errors.
        **kwargs
            Keyword arguments to the method.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        try:
            async with timeout.enforce():
                return await method(
                    *args, _request_timeout=timeout.left(), **kwargs
                )
        except ApiException as e:
            raise KubernetesError.from_exception(
                message, e, kind=self._kind, namespace=namespace, name=name
            ) from e
