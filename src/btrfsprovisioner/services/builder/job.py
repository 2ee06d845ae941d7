"""Construction of Kubernetes ``Job`` objects for provisioner work."""

from __future__ import annotations

from kubernetes_asyncio.client import (
    V1Container,
    V1EnvVar,
    V1EnvVarSource,
    V1HostPathVolumeSource,
    V1Job,
    V1JobSpec,
    V1ObjectFieldSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1SecurityContext,
    V1Volume,
    V1VolumeMount,
)

from ...config import Config
from ...constants import (
    ENV_PREFIX,
    HOST_FS_ENV_VAR,
    HOST_FS_MOUNT_PATH,
    NODE_NAME_ENV_VAR,
)
from ...models.domain.jobs import ProvisionerJob, job_to_labels

__all__ = ["ProvisionerJobBuilder"]


class ProvisionerJobBuilder:
    """Construct the Kubernetes ``Job`` that runs one provisioner step.

    The job runs the provisioner image with a subcommand on a specific node,
    with the root filesystem of that node mounted so that the btrfs tools
    can be run against it under :command:`chroot`.

    Parameters
    ----------
    config
        Provisioner configuration.
    """

    def __init__(self, config: Config) -> None:
        self._config = config

    def build(
        self,
        job: ProvisionerJob,
        *,
        node_name: str,
        name: str,
        args: list[str],
    ) -> V1Job:
        """Construct a job.

        Parameters
        ----------
        job
            Identity of the job, rendered as its labels.
        node_name
            Node on which the job must run.
        name
            Prefix of the generated job name.
        args
            Provisioner subcommand and its arguments.

        Returns
        -------
        kubernetes_asyncio.client.models.V1Job
            Job to create.
        """
        labels = job_to_labels(job)
        ttl = int(self._config.job_ttl.total_seconds())
        return V1Job(
            metadata=V1ObjectMeta(
                generate_name=f"{name}-",
                namespace=self._config.namespace,
                labels=labels,
            ),
            spec=V1JobSpec(
                ttl_seconds_after_finished=ttl,
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=labels),
                    spec=self._build_pod_spec(node_name, args),
                ),
            ),
        )

    def _build_env(self) -> list[V1EnvVar]:
        """Construct the environment of the provisioner container.

        Settings that affect how volumes are laid out on disk must agree
        between the controller and its jobs, so they are passed down
        explicitly.
        """
        config = self._config
        timeout = int(config.kubernetes_timeout.total_seconds())
        settings = {
            "VOLUMES_DIR": str(config.volumes_dir),
            "ARCHIVE_ON_DELETE": str(config.archive_on_delete).lower(),
            "STORAGE_CLASS_PER_NODE_ENABLED": (
                str(config.storage_class_per_node_enabled).lower()
            ),
            "STORAGE_CLASS_PER_NODE_NAME_PATTERN": (
                config.storage_class_per_node_name_pattern
            ),
            "KUBERNETES_TIMEOUT": f"{timeout}s",
            "LOG_LEVEL": config.log_level.value,
            "LOG_PROFILE": config.log_profile.value,
        }
        node_name_source = V1EnvVarSource(
            field_ref=V1ObjectFieldSelector(field_path="spec.nodeName")
        )
        env = [
            V1EnvVar(name=HOST_FS_ENV_VAR, value=HOST_FS_MOUNT_PATH),
            V1EnvVar(name=NODE_NAME_ENV_VAR, value_from=node_name_source),
        ]
        env.extend(
            V1EnvVar(name=ENV_PREFIX + k, value=v) for k, v in settings.items()
        )
        return env

    def _build_pod_spec(self, node_name: str, args: list[str]) -> V1PodSpec:
        """Construct the pod specification of the job."""
        image = self._config.image
        container = V1Container(
            name="provisioner",
            image=image.reference,
            image_pull_policy=image.pull_policy.value,
            args=args,
            env=self._build_env(),
            security_context=V1SecurityContext(privileged=True),
            volume_mounts=[
                V1VolumeMount(name="host", mount_path=HOST_FS_MOUNT_PATH)
            ],
        )
        return V1PodSpec(
            containers=[container],
            node_name=node_name,
            restart_policy="OnFailure",
            service_account_name=self._config.service_account_name,
            volumes=[
                V1Volume(
                    name="host", host_path=V1HostPathVolumeSource(path="/")
                )
            ],
        )
