"""Domain models package."""

from provisioner.domain.models.base import (
    DomainEntity,
    generate_id,
    random_string,
    utc_now,
    ValueObject,
)
from provisioner.domain.models.cloud_provider import (
    CloudProvider,
    ClusterType,
    GIT_HOSTS,
    GitHost,
    GitProtocol,
    GitProvider,
)
from provisioner.domain.models.cluster import (
    Cluster,
    ClusterDefinition,
    ClusterStatus,
    ConfigurationError,
    generate_cluster_id,
    InvalidFieldPathError,
)
from provisioner.domain.models.paths import ClusterPaths
from provisioner.domain.models.steps import (
    checkpoint_path,
    CREATION_STEPS,
    Step,
    StepStatus,
)


__all__ = [
    "CREATION_STEPS",
    "CloudProvider",
    "Cluster",
    "ClusterDefinition",
    "ClusterPaths",
    "ClusterStatus",
    "ClusterType",
    "ConfigurationError",
    "DomainEntity",
    "GIT_HOSTS",
    "GitHost",
    "GitProtocol",
    "GitProvider",
    "InvalidFieldPathError",
    "Step",
    "StepStatus",
    "ValueObject",
    "checkpoint_path",
    "generate_cluster_id",
    "generate_id",
    "random_string",
    "utc_now",
]
