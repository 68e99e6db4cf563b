"""Pipeline step identifiers and checkpoint states."""

from __future__ import annotations

from enum import Enum


class StepStatus(str, Enum):
    """Checkpoint state of a single pipeline step."""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class Step(str, Enum):
    """Checkpoint keys, one per pipeline step."""

    DOMAIN_LIVENESS = "domain_liveness"
    STATE_STORE_CREATED = "state_store_created"
    GIT_INIT = "git_init"
    KBOT_SETUP = "kbot_setup"
    GITOPS_READY = "gitops_ready"
    GIT_TERRAFORM_APPLY = "git_terraform_apply"
    GITOPS_PUSHED = "gitops_pushed"
    CLOUD_TERRAFORM_APPLY = "cloud_terraform_apply"
    KMS_KEY_DETOKENIZED = "kms_key_detokenized"
    CLUSTER_READY = "cluster_ready"
    CLUSTER_SECRETS_CREATED = "cluster_secrets_created"
    ARGOCD_INSTALL = "argocd_install"
    ARGOCD_INITIALIZE = "argocd_initialize"
    ARGOCD_CREATE_REGISTRY = "argocd_create_registry"
    VAULT_INITIALIZED = "vault_initialized"
    VAULT_TERRAFORM_APPLY = "vault_terraform_apply"
    VAULT_SECRETS = "vault_secrets"
    USERS_TERRAFORM_APPLY = "users_terraform_apply"
    FINAL_CHECK = "final_check"

    # Deletion only
    ARGOCD_DELETE_REGISTRY = "argocd_delete_registry"


# Fixed total order of the creation pipeline.
CREATION_STEPS: tuple[Step, ...] = (
    Step.DOMAIN_LIVENESS,
    Step.STATE_STORE_CREATED,
    Step.GIT_INIT,
    Step.KBOT_SETUP,
    Step.GITOPS_READY,
    Step.GIT_TERRAFORM_APPLY,
    Step.GITOPS_PUSHED,
    Step.CLOUD_TERRAFORM_APPLY,
    Step.KMS_KEY_DETOKENIZED,
    Step.CLUSTER_READY,
    Step.CLUSTER_SECRETS_CREATED,
    Step.ARGOCD_INSTALL,
    Step.ARGOCD_INITIALIZE,
    Step.ARGOCD_CREATE_REGISTRY,
    Step.VAULT_INITIALIZED,
    Step.VAULT_TERRAFORM_APPLY,
    Step.VAULT_SECRETS,
    Step.USERS_TERRAFORM_APPLY,
    Step.FINAL_CHECK,
)


def checkpoint_path(step: Step) -> str:
    """Field path of a step's checkpoint inside the cluster record."""
    return f"checkpoints.{step.value}"
