"""Service port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from contextlib import AbstractAsyncContextManager
from typing import Any

from provisioner.domain.models.base import ValueObject
from provisioner.domain.models.cloud_provider import CloudProvider, GitProvider
from provisioner.domain.models.cluster import Cluster, StateStoreCredentials, StateStoreDetails
from provisioner.domain.models.paths import ClusterPaths


class SshKey(ValueObject):
    """A public key registered with a git provider account."""

    id: int
    title: str
    key: str


class KeyPair(ValueObject):
    public_key: str
    private_key: str


class VaultInitResult(ValueObject):
    root_token: str
    unseal_keys: list[str]


class RenderedTree(ValueObject):
    """Summary of a detokenized directory tree."""

    root: str
    files_scanned: int
    files_changed: int


class ProvisionedStateStore(ValueObject):
    credentials: StateStoreCredentials
    details: StateStoreDetails


class TerraformExecutor(ABC):
    """Port for Terraform execution."""

    @abstractmethod
    async def apply(self, working_dir: str, env: Mapping[str, str]) -> tuple[bool, str]:
        """Run init and apply in a working directory. Returns (success, output)."""

    @abstractmethod
    async def destroy(self, working_dir: str, env: Mapping[str, str]) -> tuple[bool, str]:
        """Run init and destroy in a working directory. Returns (success, output)."""


class KubernetesClient(ABC):
    """Port for the operations the pipeline performs against a cluster."""

    @abstractmethod
    async def ensure_namespaces(self, names: list[str]) -> None:
        """Create namespaces that do not exist yet."""

    @abstractmethod
    async def create_secret_if_absent(
        self,
        namespace: str,
        name: str,
        data: Mapping[str, str],
        labels: Mapping[str, str] | None = None,
        annotations: Mapping[str, str] | None = None,
    ) -> bool:
        """Create a secret unless one with that name exists. Returns True if created."""

    @abstractmethod
    async def read_secret(self, namespace: str, name: str) -> dict[str, str] | None:
        """Read and decode a secret, or None when it does not exist."""

    @abstractmethod
    async def upsert_secret(self, namespace: str, name: str, data: Mapping[str, str]) -> None:
        """Create or replace a secret."""

    @abstractmethod
    async def ensure_service_account(self, namespace: str, name: str) -> None:
        """Create a service account unless it exists."""

    @abstractmethod
    async def apply_kustomize(self, url: str) -> None:
        """Apply a remote kustomization."""

    @abstractmethod
    async def wait_for_deployment_ready(self, namespace: str, name: str, timeout: int) -> None:
        """Block until a deployment has all replicas ready."""

    @abstractmethod
    async def wait_for_statefulset_ready(
        self, namespace: str, label_selector: str, timeout: int
    ) -> None:
        """Block until the matching statefulset has scheduled all its replicas."""

    @abstractmethod
    async def wait_for_job_complete(self, namespace: str, name: str, timeout: int) -> None:
        """Block until a job has succeeded."""

    @abstractmethod
    def port_forward(
        self, namespace: str, service: str, local_port: int, remote_port: int
    ) -> AbstractAsyncContextManager[None]:
        """Forward a local port to a service for the duration of the context."""

    @abstractmethod
    async def create_custom_object(
        self, group: str, version: str, namespace: str, plural: str, body: dict[str, Any]
    ) -> None:
        """Create a namespaced custom resource. An existing object is not an error."""

    @abstractmethod
    async def delete_persistent_volume_claims(self, timeout: int) -> int:
        """Delete every PVC in the cluster and wait for them to go. Returns the count."""


class GitProviderClient(ABC):
    """Port for the git SaaS REST API."""

    @abstractmethod
    async def get_authenticated_user(self) -> str:
        """Return the login of the token owner. Fails on a bad token."""

    @abstractmethod
    async def get_owner_id(self, owner: str) -> int:
        """Return the numeric id of an organization or group."""

    @abstractmethod
    async def repository_exists(self, owner: str, repo: str) -> bool:
        """Check whether a repository exists."""

    @abstractmethod
    async def team_exists(self, owner: str, team: str) -> bool:
        """Check whether a team exists."""

    @abstractmethod
    async def list_ssh_keys(self) -> list[SshKey]:
        """List the token owner's SSH keys."""

    @abstractmethod
    async def add_ssh_key(self, title: str, key: str) -> None:
        """Register a public key with the token owner's account."""

    @abstractmethod
    async def delete_ssh_key(self, key_id: int) -> None:
        """Remove an SSH key."""

    @abstractmethod
    async def delete_container_registries(self, owner: str, repo: str) -> int:
        """Delete a repository's container registries. Returns the count."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying HTTP client."""


class GitRepository(ABC):
    """Port for local git working copies."""

    @abstractmethod
    async def clone(self, url: str, branch: str, dest: str) -> None:
        """Clone a single branch into dest."""

    @abstractmethod
    async def init(self, path: str, branch: str = "main") -> None:
        """Initialize a repository."""

    @abstractmethod
    async def commit_all(self, path: str, message: str) -> None:
        """Stage everything and commit."""

    @abstractmethod
    async def add_remote(self, path: str, name: str, url: str) -> None:
        """Add or replace a named remote."""

    @abstractmethod
    async def push(
        self,
        path: str,
        remote: str,
        branch: str,
        *,
        username: str = "",
        token: str = "",
        ssh_private_key: str = "",
    ) -> None:
        """Push a branch using token or SSH key credentials."""


class TemplateRenderer(ABC):
    """Port for replacing placeholder tokens in a directory tree."""

    @abstractmethod
    def render(self, root: str, values: Mapping[str, str]) -> RenderedTree:
        """Replace tokens in every file under root, in place."""


class GitopsWorkspace(ABC):
    """Port for building and publishing the gitops and metaphor repositories."""

    @abstractmethod
    async def prepare(self, paths: ClusterPaths, cluster: Cluster) -> None:
        """Clone the template, arrange it for this cluster and commit locally."""

    @abstractmethod
    async def push(self, paths: ClusterPaths, cluster: Cluster) -> None:
        """Push both repositories to the git provider."""

    @abstractmethod
    async def publish_kms_key(self, paths: ClusterPaths, cluster: Cluster, key_id: str) -> None:
        """Write the KMS key id into the cluster registry, commit and push gitops."""


class KeyPairGenerator(ABC):
    """Port for SSH keypair generation."""

    @abstractmethod
    def generate(self) -> KeyPair:
        """Generate a new keypair in OpenSSH format."""


class ArgoCDClient(ABC):
    """Port for the ArgoCD API."""

    @abstractmethod
    async def get_token(self, username: str, password: str) -> str:
        """Exchange credentials for a session token."""

    @abstractmethod
    async def delete_application(self, token: str, name: str, cascade: bool = True) -> None:
        """Delete an application."""


class VaultClient(ABC):
    """Port for the Vault API."""

    @abstractmethod
    async def initialize(self, secret_shares: int = 5, secret_threshold: int = 3) -> VaultInitResult:
        """Initialize Vault and return the root token and unseal keys."""

    @abstractmethod
    async def write_kv(self, token: str, path: str, data: Mapping[str, str]) -> None:
        """Write a secret to the KV v2 engine mounted at ``secret``."""


class DnsResolver(ABC):
    """Port for public DNS lookups."""

    @abstractmethod
    async def name_servers(self, domain: str) -> list[str]:
        """Return the NS records of a domain, empty when it does not resolve."""


class StateStoreProvisioner(ABC):
    """Port for the object storage that holds Terraform state."""

    @abstractmethod
    async def create(self, cluster: Cluster) -> ProvisionedStateStore:
        """Create the state bucket and the credentials Terraform reaches it with.

        Must be safe to call again for a bucket that already exists.
        """


class KeyManagementClient(ABC):
    """Port for the cloud key management service."""

    @abstractmethod
    async def key_id(self, alias: str) -> str:
        """Resolve a key alias to its key id."""


class EventPublisher(ABC):
    """Port for publishing domain events."""

    @abstractmethod
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        """Publish an event."""

    @abstractmethod
    async def publish_batch(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        """Publish a batch of events."""


# Factories for clients bound to a specific cluster, account or endpoint.
KubernetesClientFactory = Callable[[str], KubernetesClient]
GitProviderClientFactory = Callable[[GitProvider, str], GitProviderClient]
ArgoCDClientFactory = Callable[[str], ArgoCDClient]
VaultClientFactory = Callable[[str], VaultClient]
StateStoreProvisionerFactory = Callable[[CloudProvider], StateStoreProvisioner]
KeyManagementClientFactory = Callable[[Cluster], KeyManagementClient]


class ReadinessTimeoutError(Exception):
    """Raised when a cluster resource does not become ready in time."""

    def __init__(self, kind: str, name: str, timeout: int) -> None:
        self.kind = kind
        self.name = name
        self.timeout = timeout
        super().__init__(f"{kind} {name} not ready after {timeout}s")


class GitProviderError(Exception):
    """Raised when the git provider API rejects or fails a request."""


class ArgoCDError(Exception):
    """Raised when ArgoCD cannot be authenticated against or driven."""


class VaultError(Exception):
    """Raised when Vault cannot be initialized or written to."""


class DomainLivenessError(Exception):
    """Raised when the domain does not resolve before the liveness timeout."""

    def __init__(self, domain: str, timeout: int) -> None:
        self.domain = domain
        super().__init__(
            f"failed to verify domain liveness for domain {domain} after {timeout}s"
            " - it may be necessary to wait for propagation"
        )


class DnsLookupError(Exception):
    """Raised when a DNS lookup cannot be performed."""


class StateStoreError(Exception):
    """Raised when the Terraform state store cannot be created."""


class KeyManagementError(Exception):
    """Raised when a KMS key cannot be resolved."""
