"""Kubernetes client backed by the official Python client and kubectl."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from provisioner.config import KubernetesSettings
from provisioner.domain.ports.services import (
    KubernetesClient,
    KubernetesClientFactory,
    ReadinessTimeoutError,
)
from provisioner.infrastructure.shell import run_command


logger = structlog.get_logger(__name__)

T = TypeVar("T")

PORT_FORWARD_STARTUP_SECONDS = 15


def _build_api_client(kubeconfig: str) -> client.ApiClient:
    if kubeconfig:
        return config.new_client_from_config(config_file=kubeconfig)
    configuration = client.Configuration()
    config.load_incluster_config(client_configuration=configuration)
    return client.ApiClient(configuration=configuration)


def _decode(data: Mapping[str, str] | None) -> dict[str, str]:
    return {key: base64.b64decode(value).decode() for key, value in (data or {}).items()}


class KubernetesApiClient(KubernetesClient):
    """Synchronous kubernetes client calls run in worker threads.

    Readiness waits poll every ``poll_interval`` seconds and raise
    :class:`ReadinessTimeoutError` once their timeout elapses.
    """

    def __init__(
        self,
        kubeconfig: str = "",
        kubectl_binary: str = "kubectl",
        poll_interval: float = 1.0,
        api_client: client.ApiClient | None = None,
    ) -> None:
        self._kubeconfig = kubeconfig
        self._kubectl = kubectl_binary
        self._poll_interval = poll_interval
        api = api_client or _build_api_client(kubeconfig)
        self._core = client.CoreV1Api(api)
        self._apps = client.AppsV1Api(api)
        self._batch = client.BatchV1Api(api)
        self._custom = client.CustomObjectsApi(api)

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    async def ensure_namespaces(self, names: list[str]) -> None:
        for name in names:
            if await self._read_or_none(self._core.read_namespace, name) is not None:
                continue
            body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
            await self._create_ignoring_conflict(self._core.create_namespace, body)
            logger.info("namespace_created", namespace=name)

    async def create_secret_if_absent(
        self,
        namespace: str,
        name: str,
        data: Mapping[str, str],
        labels: Mapping[str, str] | None = None,
        annotations: Mapping[str, str] | None = None,
    ) -> bool:
        existing = await self._read_or_none(self._core.read_namespaced_secret, name, namespace)
        if existing is not None:
            logger.info("secret_exists", namespace=namespace, name=name)
            return False

        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=dict(labels or {}),
                annotations=dict(annotations or {}),
            ),
            string_data=dict(data),
            type="Opaque",
        )
        created = await self._create_ignoring_conflict(
            self._core.create_namespaced_secret, namespace, body
        )
        if created:
            logger.info("secret_created", namespace=namespace, name=name)
        return created

    async def read_secret(self, namespace: str, name: str) -> dict[str, str] | None:
        secret = await self._read_or_none(self._core.read_namespaced_secret, name, namespace)
        if secret is None:
            return None
        return _decode(secret.data)

    async def upsert_secret(self, namespace: str, name: str, data: Mapping[str, str]) -> None:
        await self.upsert_labeled_secret(namespace, name, data, labels=None)

    async def upsert_labeled_secret(
        self,
        namespace: str,
        name: str,
        data: Mapping[str, str],
        labels: Mapping[str, str] | None,
    ) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=dict(labels or {})),
            string_data=dict(data),
            type="Opaque",
        )
        created = await self._create_ignoring_conflict(
            self._core.create_namespaced_secret, namespace, body
        )
        if not created:
            await asyncio.to_thread(self._core.replace_namespaced_secret, name, namespace, body)
        logger.info("secret_upserted", namespace=namespace, name=name)

    async def delete_secret(self, namespace: str, name: str) -> None:
        try:
            await asyncio.to_thread(self._core.delete_namespaced_secret, name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise

    async def list_secrets(self, namespace: str, label_selector: str) -> list[dict[str, str]]:
        result = await asyncio.to_thread(
            self._core.list_namespaced_secret, namespace, label_selector=label_selector
        )
        return [_decode(item.data) for item in result.items]

    async def ensure_service_account(self, namespace: str, name: str) -> None:
        existing = await self._read_or_none(
            self._core.read_namespaced_service_account, name, namespace
        )
        if existing is not None:
            return
        body = client.V1ServiceAccount(metadata=client.V1ObjectMeta(name=name, namespace=namespace))
        await self._create_ignoring_conflict(
            self._core.create_namespaced_service_account, namespace, body
        )
        logger.info("service_account_created", namespace=namespace, name=name)

    async def apply_kustomize(self, url: str) -> None:
        await run_command([*self._kubectl_base(), "apply", "-k", url])
        logger.info("kustomization_applied", url=url)

    async def create_custom_object(
        self, group: str, version: str, namespace: str, plural: str, body: dict[str, Any]
    ) -> None:
        created = await self._create_ignoring_conflict(
            self._custom.create_namespaced_custom_object, group, version, namespace, plural, body
        )
        logger.info(
            "custom_object_created" if created else "custom_object_exists",
            kind=body.get("kind"),
            name=body.get("metadata", {}).get("name"),
            namespace=namespace,
        )

    async def delete_persistent_volume_claims(self, timeout: int) -> int:
        claims = await asyncio.to_thread(self._core.list_persistent_volume_claim_for_all_namespaces)
        for claim in claims.items:
            try:
                await asyncio.to_thread(
                    self._core.delete_namespaced_persistent_volume_claim,
                    claim.metadata.name,
                    claim.metadata.namespace,
                )
            except ApiException as e:
                if e.status != 404:
                    raise
        logger.info("persistent_volume_claims_deleting", count=len(claims.items))

        async def all_gone() -> bool:
            remaining = await asyncio.to_thread(
                self._core.list_persistent_volume_claim_for_all_namespaces
            )
            return not remaining.items

        await self._poll(all_gone, "persistentvolumeclaims", "all", timeout)
        return len(claims.items)

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def wait_for_deployment_ready(self, namespace: str, name: str, timeout: int) -> None:
        async def ready() -> bool:
            deployment = await self._read_or_none(
                self._apps.read_namespaced_deployment, name, namespace
            )
            if deployment is None:
                return False
            wanted = deployment.spec.replicas or 1
            return (deployment.status.ready_replicas or 0) >= wanted

        await self._poll(ready, "deployment", f"{namespace}/{name}", timeout)
        logger.info("deployment_ready", namespace=namespace, name=name)

    async def wait_for_statefulset_ready(
        self, namespace: str, label_selector: str, timeout: int
    ) -> None:
        # Pods of a sealed vault are never Ready, so only scheduling is awaited.
        async def scheduled() -> bool:
            result = await asyncio.to_thread(
                self._apps.list_namespaced_stateful_set, namespace, label_selector=label_selector
            )
            if not result.items:
                return False
            statefulset = result.items[0]
            wanted = statefulset.spec.replicas or 1
            return (statefulset.status.current_replicas or 0) >= wanted

        await self._poll(scheduled, "statefulset", f"{namespace}/{label_selector}", timeout)
        logger.info("statefulset_ready", namespace=namespace, selector=label_selector)

    async def wait_for_job_complete(self, namespace: str, name: str, timeout: int) -> None:
        async def complete() -> bool:
            job = await self._read_or_none(self._batch.read_namespaced_job, name, namespace)
            if job is None:
                return False
            for condition in job.status.conditions or []:
                if condition.type == "Failed" and condition.status == "True":
                    raise JobFailedError(f"{namespace}/{name}", condition.message or "")
            return (job.status.succeeded or 0) >= 1

        await self._poll(complete, "job", f"{namespace}/{name}", timeout)
        logger.info("job_complete", namespace=namespace, name=name)

    @asynccontextmanager
    async def port_forward(
        self, namespace: str, service: str, local_port: int, remote_port: int
    ) -> AsyncIterator[None]:
        proc = await asyncio.create_subprocess_exec(
            *self._kubectl_base(),
            "-n",
            namespace,
            "port-forward",
            f"svc/{service}",
            f"{local_port}:{remote_port}",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await self._wait_for_local_port(proc, local_port)
            logger.info("port_forward_started", namespace=namespace, service=service, port=local_port)
            yield
        finally:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()
            logger.info("port_forward_stopped", namespace=namespace, service=service)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _kubectl_base(self) -> list[str]:
        if self._kubeconfig:
            return [self._kubectl, "--kubeconfig", self._kubeconfig]
        return [self._kubectl]

    async def _poll(
        self, check: Callable[[], Any], kind: str, name: str, timeout: int
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                if await check():
                    return
            except ApiException as e:
                logger.warning(
                    "readiness_check_api_error",
                    kind=kind,
                    name=name,
                    status=e.status,
                    reason=e.reason,
                )
            if loop.time() >= deadline:
                raise ReadinessTimeoutError(kind, name, timeout)
            await asyncio.sleep(self._poll_interval)

    async def _wait_for_local_port(self, proc: asyncio.subprocess.Process, port: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + PORT_FORWARD_STARTUP_SECONDS
        while loop.time() < deadline:
            if proc.returncode is not None:
                raise PortForwardError(f"kubectl port-forward exited with {proc.returncode}")
            try:
                _, writer = await asyncio.open_connection("127.0.0.1", port)
            except OSError:
                await asyncio.sleep(self._poll_interval)
                continue
            writer.close()
            await writer.wait_closed()
            return
        raise ReadinessTimeoutError("port-forward", f"localhost:{port}", PORT_FORWARD_STARTUP_SECONDS)

    @staticmethod
    async def _read_or_none(fn: Callable[..., T], *args: Any) -> T | None:
        try:
            return await asyncio.to_thread(fn, *args)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    @staticmethod
    async def _create_ignoring_conflict(fn: Callable[..., Any], *args: Any) -> bool:
        try:
            await asyncio.to_thread(fn, *args)
        except ApiException as e:
            if e.status == 409:
                return False
            raise
        return True


def kubernetes_client_factory(settings: KubernetesSettings) -> KubernetesClientFactory:
    def build(kubeconfig: str) -> KubernetesClient:
        return KubernetesApiClient(
            kubeconfig=kubeconfig,
            kubectl_binary=settings.kubectl_binary,
            poll_interval=settings.poll_interval_seconds,
        )

    return build


class JobFailedError(Exception):
    """Raised when a job reports a Failed condition."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(f"job {name} failed: {message}")


class PortForwardError(Exception):
    """Raised when kubectl port-forward cannot be established."""
