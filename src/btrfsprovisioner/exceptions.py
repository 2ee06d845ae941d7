"""Exceptions for the btrfs provisioner."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Self, override

from kubernetes_asyncio.client import ApiException
from safir.datetime import format_datetime_for_logging
from safir.slack.blockkit import (
    SlackBaseField,
    SlackCodeBlock,
    SlackException,
    SlackMessage,
    SlackTextBlock,
    SlackTextField,
)
from safir.slack.sentry import SentryEventInfo

__all__ = [
    "BtrfsCommandError",
    "ControllerTimeoutError",
    "InvalidJobLabelsError",
    "InvalidObjectError",
    "InvalidQuantityError",
    "InvalidUnitError",
    "KubernetesError",
    "KubernetesObjectError",
    "MissingObjectError",
    "MissingVolumeRootError",
    "PartialProvisionError",
    "QgroupNotFoundError",
    "QuantityParseError",
    "StorageClassExistsError",
    "UnsupportedAssignmentError",
    "VolumeExistsError",
    "VolumePathError",
]


class InvalidQuantityError(ValueError):
    """A Kubernetes resource quantity could not be parsed."""


class InvalidUnitError(InvalidQuantityError):
    """The unit suffix of a quantity is not recognized.

    Parameters
    ----------
    quantity
        Quantity being parsed.
    unit
        Unrecognized suffix.
    """

    def __init__(self, quantity: str, unit: str) -> None:
        super().__init__(f'Invalid unit "{unit}" in quantity "{quantity}"')
        self.quantity = quantity
        self.unit = unit


class QuantityParseError(InvalidQuantityError):
    """The numeric part of a quantity is malformed or out of range."""


class InvalidJobLabelsError(ValueError):
    """The labels of a job do not describe a provisioner job."""


class ControllerTimeoutError(SlackException):
    """Wraps `TimeoutError` with additional context and Slack support.

    Parameters
    ----------
    operation
        Operation that timed out.
    started_at
        Start time of the operation.
    failed_at
        Time at which the operation timed out.
    """

    def __init__(
        self, operation: str, *, started_at: datetime, failed_at: datetime
    ) -> None:
        self.started_at = started_at
        elapsed = failed_at - started_at
        msg = f"{operation} timed out after {elapsed.total_seconds()}s"
        super().__init__(msg, failed_at=failed_at)

    @override
    def to_slack(self) -> SlackMessage:
        """Format the exception as a Slack message.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting with
            `~safir.slack.webhook.SlackWebhookClient`.
        """
        started_at = format_datetime_for_logging(self.started_at)
        failed_at = format_datetime_for_logging(self.failed_at)
        fields: list[SlackBaseField] = [
            SlackTextField(heading="Started at", text=started_at),
            SlackTextField(heading="Failed at", text=failed_at),
        ]
        return SlackMessage(message=str(self), fields=fields)

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        started_at = format_datetime_for_logging(self.started_at)
        info.contexts.setdefault("info", {})["started_at"] = started_at
        return info


class BtrfsCommandError(SlackException):
    """A btrfs (or helper) command exited with a non-zero status.

    Parameters
    ----------
    command
        Command that was run, including any ``chroot`` prefix.
    returncode
        Exit status of the command.
    stderr
        Captured standard error of the command.
    """

    def __init__(
        self, command: list[str], returncode: int, stderr: str
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        cmd = " ".join(command)
        msg = f"Command {cmd} failed with status {returncode}"
        if stderr.strip():
            msg += f": {stderr.strip()}"
        super().__init__(msg)

    @override
    def to_slack(self) -> SlackMessage:
        """Format the exception as a Slack message.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        cmd = " ".join(self.command)
        message.message = f"Command exited with status {self.returncode}"
        message.blocks.append(SlackCodeBlock(heading="Command", code=cmd))
        if self.stderr:
            block = SlackCodeBlock(heading="Error", code=self.stderr)
            message.blocks.append(block)
        return message

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        info.tags["returncode"] = str(self.returncode)
        info.contexts["command"] = {"argv": self.command}
        if self.stderr:
            info.attachments["stderr"] = self.stderr
        return info


class KubernetesError(SlackException):
    """An API call to Kubernetes failed.

    Parameters
    ----------
    message
        Summary of error.
    namespace
        Namespace of object being acted on.
    name
        Name of object being acted on.
    kind
        Kind of object being acted on.
    status
        Status code of failure, if any.
    body
        Body of failure message, if any.
    """

    @classmethod
    def from_exception(
        cls,
        message: str,
        exc: ApiException,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
    ) -> Self:
        """Create an exception from a Kubernetes API exception.

        Parameters
        ----------
        message
            Brief explanation of what was being attempted.
        exc
            Kubernetes API exception.
        kind
            Kind of object being acted on.
        namespace
            Namespace of object being acted on.
        name
            Name of object being acted on.

        Returns
        -------
        KubernetesError
            Newly-created exception.
        """
        return cls(
            message,
            kind=kind,
            namespace=namespace,
            name=name,
            status=exc.status,
            body=exc.body if exc.body else exc.reason,
        )

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.status = status
        self.body = body

    @override
    def __str__(self) -> str:
        result = self._summary()
        if self.body:
            result += f": {self.body}"
        return result

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        message.message = self._summary()
        if self.status:
            field = SlackTextField(heading="Status", text=str(self.status))
            message.fields.append(field)
        if self.name or self.kind:
            block = SlackTextBlock(heading="Object", text=self._object())
            message.blocks.append(block)
        if self.body:
            code = SlackCodeBlock(heading="Error", code=self.body)
            message.blocks.append(code)
        return message

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        if self.status:
            info.tags["status"] = str(self.status)
        if self.name:
            info.tags["name"] = self.name
        if self.kind:
            info.tags["kind"] = self.kind
        if self.namespace:
            info.tags["namespace"] = self.namespace
        if self.body:
            info.attachments["body"] = self.body
        return info

    def _object(self) -> str:
        """Describe the object being acted on."""
        kind = self.kind or ""
        if not self.name:
            if self.namespace:
                return f"{kind} in namespace {self.namespace}"
            return kind
        kind = f"{kind} " if kind else ""
        if self.namespace:
            return f"{kind}{self.namespace}/{self.name}"
        return f"{kind}{self.name}"

    def _summary(self) -> str:
        """Summarize the exception.

        Produces a single-line summary, used for the main part of the Slack
        message and part of the stringification.
        """
        details = []
        if self.name or self.kind:
            details.append(self._object())
        if self.status:
            details.append(f"status {self.status}")
        if not details:
            return self.message
        return f"{self.message} ({', '.join(details)})"


class KubernetesObjectError(SlackException):
    """Base class for problems with a specific Kubernetes object.

    Parameters
    ----------
    message
        Summary of error.
    kind
        Kind of Kubernetes object.
    namespace
        Namespace of object, if it is namespaced.
    name
        Name of object.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        namespace: str | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.namespace = namespace
        self.name = name

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        if self.name:
            if self.namespace:
                obj = f"{self.kind} {self.namespace}/{self.name}"
            else:
                obj = f"{self.kind} {self.name}"
        elif self.namespace:
            obj = f"{self.kind} (namespace: {self.namespace})"
        else:
            obj = self.kind
        message.blocks.append(SlackTextBlock(heading="Object", text=obj))
        return message

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        info.tags["kind"] = self.kind
        if self.name:
            info.tags["name"] = self.name
        if self.namespace:
            info.tags["namespace"] = self.namespace
        return info


class InvalidObjectError(KubernetesObjectError):
    """A Kubernetes object lacks a field or marker we require."""


class MissingObjectError(KubernetesObjectError):
    """An expected Kubernetes object is missing."""


class StorageClassExistsError(KubernetesObjectError):
    """A node already has a storage class it controls.

    Parameters
    ----------
    node
        Name of the node being initialized.
    name
        Name of the existing storage class.
    """

    def __init__(self, node: str, name: str) -> None:
        msg = f"Node {node} already controls storage class {name}"
        super().__init__(msg, kind="StorageClass", name=name)
        self.node = node


class UnsupportedAssignmentError(KubernetesObjectError):
    """A storage class uses dynamic node assignment, which is unsupported.

    Parameters
    ----------
    name
        Name of the storage class, or `None` if dynamic assignment was
        requested by the configuration.
    """

    def __init__(self, name: str | None = None) -> None:
        if name:
            msg = f"Storage class {name} uses unsupported dynamic assignment"
        else:
            msg = "Dynamic storage classes are not supported"
        super().__init__(msg, kind="StorageClass", name=name)


class VolumePathError(SlackException):
    """Base class for problems with a path on the volume filesystem.

    Parameters
    ----------
    message
        Summary of error.
    path
        Path the error is about, as seen by the btrfs tools.
    """

    def __init__(self, message: str, path: Path) -> None:
        super().__init__(message)
        self.path = path

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        block = SlackTextBlock(heading="Path", text=str(self.path))
        message.blocks.append(block)
        return message


class MissingVolumeRootError(VolumePathError):
    """The directory holding all volumes does not exist on the node."""

    def __init__(self, path: Path) -> None:
        msg = (
            f"Volume root {path} does not exist, create it or mount a btrfs"
            " filesystem there"
        )
        super().__init__(msg, path)


class VolumeExistsError(VolumePathError):
    """Something already exists where a new subvolume should go."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"Cannot create subvolume, {path} exists", path)


class QgroupNotFoundError(VolumePathError):
    """No quota group could be found for a subvolume."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"No qgroup found for {path}", path)


class PartialProvisionError(VolumePathError):
    """Provisioning failed after the subvolume was created.

    The subvolume is left in place and has to be removed by an operator.

    Parameters
    ----------
    path
        Path to the orphaned subvolume.
    error
        Description of the underlying failure.
    """

    def __init__(self, path: Path, error: str) -> None:
        msg = f"Provisioning failed, subvolume {path} left behind"
        super().__init__(msg, path)
        self.message = msg
        self.error = error

    @override
    def __str__(self) -> str:
        return f"{self.message}: {self.error}"

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        message.message = self.message
        message.blocks.append(SlackCodeBlock(heading="Error", code=self.error))
        return message
