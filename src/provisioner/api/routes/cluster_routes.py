"""Cluster API routes."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from provisioner.api.dependencies.services import (
    get_service_container,
    PipelineAlreadyRunningError,
    ServiceContainer,
)
from provisioner.api.schemas.cluster_schemas import (
    AcceptedResponse,
    ClusterListResponse,
    ClusterResponse,
    CreateClusterRequest,
)
from provisioner.domain.models.cluster import ClusterStatus, ConfigurationError
from provisioner.domain.ports.repositories import CheckpointStoreError, ClusterNotFoundError


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/cluster", tags=["clusters"])

Container = Annotated[ServiceContainer, Depends(get_service_container)]


@router.get("", response_model=ClusterListResponse)
async def list_clusters(container: Container) -> ClusterListResponse:
    """List every cluster record."""
    clusters = await container.store.list_clusters()
    return ClusterListResponse(
        items=[ClusterResponse.from_cluster(c) for c in clusters],
        total=len(clusters),
    )


@router.get("/{cluster_name}", response_model=ClusterResponse)
async def get_cluster(cluster_name: str, container: Container) -> ClusterResponse:
    """Return one cluster record with its step checkpoints."""
    try:
        cluster = await container.store.get_cluster(cluster_name)
    except ClusterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return ClusterResponse.from_cluster(cluster)


@router.post(
    "/{cluster_name}",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_cluster(
    cluster_name: str,
    request: CreateClusterRequest,
    container: Container,
) -> AcceptedResponse:
    """Create or resume a cluster.

    The record is initialized within the request so configuration
    problems surface as 400; the pipeline itself runs in the background.
    """
    if container.is_running(cluster_name):
        raise HTTPException(status_code=409, detail=f"Cluster {cluster_name} has a run in progress")

    try:
        definition = request.to_definition(cluster_name)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    controller = container.cluster_controller()
    try:
        ctx = await controller.initialize(definition)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except CheckpointStoreError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    try:
        container.run_in_background(cluster_name, "create", controller.run(ctx))
    except PipelineAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e

    logger.info("cluster_create_accepted", cluster_name=cluster_name)
    return AcceptedResponse(
        cluster_name=cluster_name, operation="create", status=ClusterStatus.PROVISIONING
    )


@router.delete(
    "/{cluster_name}",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def delete_cluster(cluster_name: str, container: Container) -> AcceptedResponse:
    """Tear down a cluster in the background."""
    try:
        await container.store.get_cluster(cluster_name)
    except ClusterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    service = container.deletion_service()
    try:
        container.run_in_background(cluster_name, "delete", service.delete(cluster_name))
    except PipelineAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e

    logger.info("cluster_delete_accepted", cluster_name=cluster_name)
    return AcceptedResponse(cluster_name=cluster_name, operation="delete", status=ClusterStatus.DELETING)
