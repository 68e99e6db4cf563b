"""Per-cluster filesystem layout."""

from __future__ import annotations

import os

from provisioner.domain.models.base import ValueObject


class ClusterPaths(ValueObject):
    """Directories and files derived from the working root and cluster name."""

    base_dir: str
    cluster_name: str

    @property
    def k1_dir(self) -> str:
        return os.path.join(self.base_dir, self.cluster_name)

    @property
    def gitops_dir(self) -> str:
        return os.path.join(self.k1_dir, "gitops")

    @property
    def metaphor_dir(self) -> str:
        return os.path.join(self.k1_dir, "metaphor")

    @property
    def kubeconfig(self) -> str:
        return os.path.join(self.k1_dir, "kubeconfig")

    def terraform_dir(self, module_dir: str) -> str:
        """Terraform entrypoint for a module inside the gitops tree."""
        return os.path.join(self.gitops_dir, "terraform", module_dir)
