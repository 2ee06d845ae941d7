"""Global constants for the btrfs provisioner."""

from datetime import timedelta
from pathlib import Path

__all__ = [
    "ARCHIVE_PREFIX",
    "CONFIG_FILE",
    "CONFIG_FILE_ENV_VAR",
    "CONTROLLING_NODE_LABEL",
    "DYNAMIC_NODE_ASSIGNMENT",
    "ENV_PREFIX",
    "FINALIZER_NAME",
    "HOST_FS_ENV_VAR",
    "HOST_FS_MOUNT_PATH",
    "JOB_TARGET_UID_LABEL",
    "JOB_TYPE_LABEL",
    "NODE_HOSTNAME_LABEL",
    "NODE_NAME_ENV_VAR",
    "PROVISIONED_BY_ANNOTATION",
    "PROVISIONER_NAME",
    "ROOT_LOGGER",
    "VOLUME_NAME_SUFFIX_LENGTH",
    "WATCH_RETRY_DELAY",
]

PROVISIONER_NAME = "timo.schwarzer.dev/btrfs-provisioner"
"""Provisioner identity used in storage classes we control."""

FINALIZER_NAME = PROVISIONER_NAME
"""Finalizer placed on every persistent volume we create."""

PROVISIONED_BY_ANNOTATION = "pv.kubernetes.io/provisioned-by"
"""Annotation recording which provisioner created a persistent volume."""

CONTROLLING_NODE_LABEL = (
    "btrfs-provisioner.timo.schwarzer.dev/controlling-node"
)
"""Storage class label naming the node that serves the class."""

DYNAMIC_NODE_ASSIGNMENT = "*"
"""Value of the controlling node label meaning any node may serve it."""

JOB_TYPE_LABEL = "btrfs-provisioner.timo.schwarzer.dev/job-type"
"""Label on dispatched jobs holding the kind of work."""

JOB_TARGET_UID_LABEL = "btrfs-provisioner.timo.schwarzer.dev/target-uid"
"""Label on dispatched jobs holding the UID of the object worked on."""

NODE_HOSTNAME_LABEL = "kubernetes.io/hostname"
"""Well-known node label used in volume node affinity."""

ARCHIVE_PREFIX = "_archive"
"""Prefix of the directory name of archived volumes."""

VOLUME_NAME_SUFFIX_LENGTH = 5
"""Length of the random suffix of generated volume names."""

HOST_FS_ENV_VAR = "HOST_FS"
"""Environment variable naming the host root filesystem."""

HOST_FS_MOUNT_PATH = "/host"
"""Where dispatched jobs mount the root filesystem of their node."""

NODE_NAME_ENV_VAR = "NODE_NAME"
"""Environment variable holding the node a job runs on."""

ENV_PREFIX = "BTRFS_PROVISIONER_"
"""Prefix for configuration environment variables."""

CONFIG_FILE_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
"""Environment variable overriding the configuration file path."""

CONFIG_FILE = Path("/etc/btrfs-provisioner/config.yaml")
"""Default configuration file path, used only if it exists."""

ROOT_LOGGER = "btrfsprovisioner"
"""Name of the root logger."""

WATCH_RETRY_DELAY = timedelta(seconds=5)
"""How long to wait before restarting a failed watch."""
