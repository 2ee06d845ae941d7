"""Application configuration for the btrfs provisioner."""

from datetime import timedelta
from pathlib import Path
from typing import Annotated, Self

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)
from safir.logging import LogLevel, Profile, configure_logging
from safir.pydantic import HumanTimedelta

from .constants import ENV_PREFIX, HOST_FS_ENV_VAR, ROOT_LOGGER
from .models.domain.kubernetes import PullPolicy

__all__ = ["Config", "ContainerImage", "EnvFirstSettings"]


class ContainerImage(BaseModel):
    """Docker image run by dispatched provisioner jobs.

    The structure of this model follows the normal Helm chart conventions so
    that image update tooling can recognize it.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    repository: Annotated[
        str,
        Field(
            title="Repository",
            description="Docker repository from which to pull the image",
        ),
    ] = "ghcr.io/timoschwarzer/btrfs-provisioner"

    pull_policy: Annotated[
        PullPolicy,
        Field(title="Pull policy", description="Kubernetes pull policy"),
    ] = PullPolicy.IF_NOT_PRESENT

    tag: Annotated[
        str,
        Field(
            title="Image tag",
            description="Tag of image to use (conventionally the version)",
        ),
    ] = "latest"

    @property
    def reference(self) -> str:
        """Image reference usable in a container specification."""
        return f"{self.repository}:{self.tag}"


class EnvFirstSettings(BaseSettings):
    """Settings in which the environment wins over constructor arguments."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX, extra="forbid", validate_by_name=True
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Override the sources of settings.

        Deactivate :file:`.env` and secret file support. Allow environment
        variables to override init parameters, since init parameters come
        from the YAML configuration file and dispatched jobs receive their
        settings from the controller as environment variables.
        """
        return (env_settings, init_settings)


class Config(EnvFirstSettings):
    """Configuration for the btrfs provisioner.

    The same configuration is used by the controller and by the jobs it
    dispatches. The controller passes the settings that affect volume
    handling to its jobs through environment variables.
    """

    volumes_dir: Annotated[
        Path,
        Field(
            title="Volume root directory",
            description=(
                "Directory holding all subvolumes, as seen by the btrfs tools"
            ),
            validation_alias=AliasChoices(
                ENV_PREFIX + "VOLUMES_DIR", "volumesDir"
            ),
        ),
    ] = Path("/volumes")

    host_fs: Annotated[
        Path | None,
        Field(
            title="Host root filesystem",
            description=(
                "If set, btrfs commands run under chroot into this directory"
                " and all volume paths are resolved relative to it"
            ),
            validation_alias=AliasChoices(
                HOST_FS_ENV_VAR, ENV_PREFIX + "HOST_FS", "hostFs"
            ),
        ),
    ] = None

    archive_on_delete: Annotated[
        bool,
        Field(
            title="Archive deleted volumes",
            description=(
                "If set, deleted volumes are renamed with an archive prefix"
                " instead of being destroyed"
            ),
            validation_alias=AliasChoices(
                ENV_PREFIX + "ARCHIVE_ON_DELETE", "archiveOnDelete"
            ),
        ),
    ] = False

    storage_class_per_node_enabled: Annotated[
        bool,
        Field(
            title="Create a storage class per node",
            validation_alias=AliasChoices(
                ENV_PREFIX + "STORAGE_CLASS_PER_NODE_ENABLED",
                "storageClassPerNodeEnabled",
            ),
        ),
    ] = True

    storage_class_per_node_name_pattern: Annotated[
        str,
        Field(
            title="Name pattern of per-node storage classes",
            description="``{}`` is replaced with the name of the node",
            validation_alias=AliasChoices(
                ENV_PREFIX + "STORAGE_CLASS_PER_NODE_NAME_PATTERN",
                "storageClassPerNodeNamePattern",
            ),
        ),
    ] = "btrfs-provisioner-{}"

    dynamic_storage_class_enabled: Annotated[
        bool,
        Field(
            title="Enable the dynamic storage class",
            description=(
                "Storage classes that may be served by any node are not"
                " supported yet and the controller refuses to start if this"
                " is set"
            ),
            validation_alias=AliasChoices(
                ENV_PREFIX + "DYNAMIC_STORAGE_CLASS_ENABLED",
                "dynamicStorageClassEnabled",
            ),
        ),
    ] = False

    namespace: Annotated[
        str,
        Field(
            title="Namespace for provisioner jobs",
            validation_alias=AliasChoices(
                ENV_PREFIX + "NAMESPACE", "namespace"
            ),
        ),
    ] = "btrfs-provisioner"

    image: Annotated[
        ContainerImage,
        Field(
            default_factory=ContainerImage,
            title="Image for provisioner jobs",
        ),
    ]

    service_account_name: Annotated[
        str,
        Field(
            title="Service account for provisioner jobs",
            validation_alias=AliasChoices(
                ENV_PREFIX + "SERVICE_ACCOUNT_NAME", "serviceAccountName"
            ),
        ),
    ] = "btrfs-provisioner-service-account"

    job_ttl: Annotated[
        HumanTimedelta,
        Field(
            title="Retention of finished jobs",
            validation_alias=AliasChoices(ENV_PREFIX + "JOB_TTL", "jobTtl"),
        ),
    ] = timedelta(minutes=10)

    node_label_selector: Annotated[
        str | None,
        Field(
            title="Label selector for nodes to initialize",
            validation_alias=AliasChoices(
                ENV_PREFIX + "NODE_LABEL_SELECTOR", "nodeLabelSelector"
            ),
        ),
    ] = "!node-role.kubernetes.io/master"

    kubernetes_timeout: Annotated[
        HumanTimedelta,
        Field(
            title="Timeout for Kubernetes operations",
            description=(
                "Bound on the Kubernetes calls made while handling one watch"
                " event or running one provisioner job step"
            ),
            validation_alias=AliasChoices(
                ENV_PREFIX + "KUBERNETES_TIMEOUT", "kubernetesTimeout"
            ),
        ),
    ] = timedelta(seconds=30)

    debug: Annotated[
        bool,
        Field(
            title="Debug logging",
            description=(
                "Log at debug level in the human-readable development"
                " format, overriding the log profile and level settings"
            ),
        ),
    ] = False

    log_profile: Annotated[
        Profile,
        Field(
            title="Logging profile",
            validation_alias=AliasChoices(
                ENV_PREFIX + "LOG_PROFILE", "logProfile"
            ),
        ),
    ] = Profile.production

    log_level: Annotated[
        LogLevel,
        Field(
            title="Log level",
            validation_alias=AliasChoices(
                ENV_PREFIX + "LOG_LEVEL", "logLevel"
            ),
        ),
    ] = LogLevel.INFO

    add_timestamp: Annotated[
        bool,
        Field(
            title="Include timestamps in log messages",
            validation_alias=AliasChoices(
                ENV_PREFIX + "ADD_TIMESTAMP", "addTimestamp"
            ),
        ),
    ] = False

    slack_webhook: Annotated[
        SecretStr | None,
        Field(
            title="Slack alert webhook",
            description=(
                "Incoming webhook to which uncaught errors are posted."
                " Alerts are disabled if this is not set."
            ),
            validation_alias=AliasChoices(
                ENV_PREFIX + "SLACK_WEBHOOK", "slackWebhook"
            ),
        ),
    ] = None

    @field_validator("storage_class_per_node_name_pattern")
    @classmethod
    def _validate_name_pattern(cls, v: str) -> str:
        if "{}" not in v:
            raise ValueError("Name pattern must contain {}")
        return v

    @field_validator("volumes_dir", "host_fs")
    @classmethod
    def _validate_absolute(cls, v: Path | None) -> Path | None:
        if v is not None and not v.is_absolute():
            raise ValueError(f"{v} is not an absolute path")
        return v

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Construct the configuration from a YAML file.

        Parameters
        ----------
        path
            Path to the configuration file in YAML.

        Returns
        -------
        Config
            The corresponding configuration.
        """
        with path.open("r") as f:
            config = cls.model_validate(yaml.safe_load(f) or {})
        config.configure_logging()
        return config

    def configure_logging(self) -> None:
        """Configure logging based on the provisioner configuration."""
        if self.debug:
            log_level = LogLevel.DEBUG
            log_profile = Profile.development
        else:
            log_level = self.log_level
            log_profile = self.log_profile

        configure_logging(
            profile=log_profile,
            log_level=log_level,
            add_timestamp=self.add_timestamp,
            name=ROOT_LOGGER,
        )

    def storage_class_name_for_node(self, node_name: str) -> str:
        """Return the name of the per-node storage class for a node.

        Parameters
        ----------
        node_name
            Name of the node.

        Returns
        -------
        str
            Storage class name.
        """
        return self.storage_class_per_node_name_pattern.replace(
            "{}", node_name
        )
