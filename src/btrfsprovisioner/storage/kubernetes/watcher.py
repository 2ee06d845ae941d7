"""Long-running watches of cluster-wide Kubernetes collections."""

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Self

from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.watch import Watch
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...models.domain.kubernetes import KubernetesModel, WatchEventType

__all__ = [
    "KubernetesWatcher",
    "WatchEvent",
]


@dataclass
class WatchEvent[T: KubernetesModel]:
    """Change to one object of a watched collection."""

    action: WatchEventType
    """What happened to the object."""

    object: T
    """The object after the change, or its last state if it was deleted."""

    @classmethod
    def from_event(cls, event: dict[str, Any], object_type: type[T]) -> Self:
        """Convert a raw event from the watch API.

        Parameters
        ----------
        event
            Event as yielded by `kubernetes_asyncio.watch.Watch`, with the
            object already deserialized.
        object_type
            Model the object must be an instance of.

        Raises
        ------
        TypeError
            Raised if the object is of some other type.
        """
        obj = event["object"]
        if not isinstance(obj, object_type):
            got = type(obj).__name__
            msg = f"Expected {object_type.__name__} in watch, got {got}"
            raise TypeError(msg)
        return cls(action=WatchEventType(event["type"]), object=obj)


class KubernetesWatcher[T: KubernetesModel]:
    """Follow every change to a cluster-wide collection, indefinitely.

    The first connection replays every existing object as an ``ADDED``
    event. When the API server ends a connection, the watch reconnects from
    the newest resource version seen, which bookmark events keep current
    even when nothing in the collection changes. If that resource version
    has been compacted away (status 410), the watch reconnects without one
    and so replays the whole collection again. Consumers must therefore
    treat every event as a statement of current state.

    Used only by the kind-specific storage classes.

    Parameters
    ----------
    method
        List method of the API supporting ``watch=True``.
    object_type
        Model of the watched objects. kubernetes_asyncio guesses this from
        the docstring of ``method``, which fails for mocks, so it is passed
        explicitly.
    kind
        Kubernetes kind of the watched objects, for logs and errors.
    logger
        Logger to use.
    label_selector
        If given, only objects matching this selector are watched.
    """

    def __init__(
        self,
        *,
        method: Callable[..., Awaitable[Any]],
        object_type: type[T],
        kind: str,
        logger: BoundLogger,
        label_selector: str | None = None,
    ) -> None:
        self._method = method
        self._type = object_type
        self._kind = kind
        self._logger = logger.bind(kind=kind)
        self._label_selector = label_selector
        self._resource_version: str | None = None

    async def events(self) -> AsyncIterator[WatchEvent[T]]:
        """Yield events until the caller stops iterating.

        Yields
        ------
        WatchEvent
            Next change to the collection. Bookmarks are consumed internally.

        Raises
        ------
        KubernetesError
            Raised for any API failure other than an expired resource
            version.
        """
        while True:
            try:
                async for event in self._stream():
                    yield event
            except ApiException as e:
                if e.status != 410:
                    raise KubernetesError.from_exception(
                        "Error watching objects", e, kind=self._kind
                    ) from e
                self._logger.info(
                    "Watch expired, replaying collection",
                    resource_version=self._resource_version,
                )
                self._resource_version = None
            else:
                self._logger.debug(
                    "Watch closed by server, reconnecting",
                    resource_version=self._resource_version,
                )

    async def _stream(self) -> AsyncIterator[WatchEvent[T]]:
        """Run one connection of the watch until the server ends it."""
        args: dict[str, Any] = {"allow_watch_bookmarks": True}
        if self._label_selector:
            args["label_selector"] = self._label_selector
        if self._resource_version:
            args["resource_version"] = self._resource_version
        async with Watch(return_type=self._type) as watch:
            async for raw in watch.stream(self._method, **args):
                version = raw["object"].metadata.resource_version
                if version:
                    self._resource_version = version
                if raw["type"] == WatchEventType.BOOKMARK.value:
                    continue
                yield WatchEvent.from_event(raw, self._type)
