"""Checkpoint store implementations."""

from provisioner.infrastructure.persistence.repositories.in_memory import (
    InMemoryCheckpointStore,
)
from provisioner.infrastructure.persistence.repositories.kubernetes_store import (
    KubernetesSecretCheckpointStore,
)
from provisioner.infrastructure.persistence.repositories.sql_store import (
    SqlCheckpointStore,
)


__all__ = [
    "InMemoryCheckpointStore",
    "KubernetesSecretCheckpointStore",
    "SqlCheckpointStore",
]
