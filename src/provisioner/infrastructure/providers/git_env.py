"""Git-provider halves of the Terraform module environments."""

from __future__ import annotations

from provisioner.domain.models.cloud_provider import GitProvider
from provisioner.domain.models.cluster import Cluster
from provisioner.domain.ports.providers import GitEnv, TerraformModule


class _SaasGitEnv(GitEnv):
    """Variables shared by the hosted git providers.

    Every module gets the provider token and owner under the provider's
    own prefix (``GITHUB_TOKEN``, ``GITLAB_OWNER``...). The git module
    also configures the Atlantis webhook and the bot's deploy key; the
    vault module additionally receives the bot's private key.
    """

    def _prefix(self) -> str:
        return self.provider.value.upper()

    def _common(self, cluster: Cluster) -> dict[str, str]:
        prefix = self._prefix()
        return {
            f"{prefix}_TOKEN": cluster.git_auth.token,
            f"{prefix}_OWNER": cluster.git_auth.owner,
        }

    def _webhook(self, cluster: Cluster) -> dict[str, str]:
        return {
            "TF_VAR_atlantis_repo_webhook_secret": cluster.atlantis_webhook_secret,
            "TF_VAR_atlantis_repo_webhook_url": cluster.atlantis_webhook_url,
            "TF_VAR_kbot_ssh_public_key": cluster.git_auth.public_key,
        }

    def module_env(self, module: TerraformModule, cluster: Cluster) -> dict[str, str]:
        env = self._common(cluster)
        if module is TerraformModule.GIT:
            env.update(self._webhook(cluster))
        elif module is TerraformModule.VAULT:
            env.update(self._webhook(cluster))
            env[f"TF_VAR_{self.provider.value}_token"] = cluster.git_auth.token
            env["TF_VAR_kbot_ssh_private_key"] = cluster.git_auth.private_key
        return env

    def module_keys(self, module: TerraformModule) -> frozenset[str]:
        prefix = self._prefix()
        keys = {f"{prefix}_TOKEN", f"{prefix}_OWNER"}
        if module in (TerraformModule.GIT, TerraformModule.VAULT):
            keys |= {
                "TF_VAR_atlantis_repo_webhook_secret",
                "TF_VAR_atlantis_repo_webhook_url",
                "TF_VAR_kbot_ssh_public_key",
            }
        if module is TerraformModule.VAULT:
            keys |= {f"TF_VAR_{self.provider.value}_token", "TF_VAR_kbot_ssh_private_key"}
        return frozenset(keys)


class GitHubEnv(_SaasGitEnv):
    provider = GitProvider.GITHUB


class GitLabEnv(_SaasGitEnv):
    """GitLab modules address the owner group by id as well as by path."""

    provider = GitProvider.GITLAB

    def module_env(self, module: TerraformModule, cluster: Cluster) -> dict[str, str]:
        env = super().module_env(module, cluster)
        if module is TerraformModule.GIT:
            env["TF_VAR_owner_group_id"] = str(cluster.gitlab_owner_group_id)
            env["TF_VAR_gitlab_owner"] = cluster.git_auth.owner
        elif module is TerraformModule.VAULT:
            env["TF_VAR_owner_group_id"] = str(cluster.gitlab_owner_group_id)
        return env

    def module_keys(self, module: TerraformModule) -> frozenset[str]:
        keys = super().module_keys(module)
        if module is TerraformModule.GIT:
            return keys | {"TF_VAR_owner_group_id", "TF_VAR_gitlab_owner"}
        if module is TerraformModule.VAULT:
            return keys | {"TF_VAR_owner_group_id"}
        return keys


GIT_ENVS: dict[GitProvider, GitEnv] = {
    GitProvider.GITHUB: GitHubEnv(),
    GitProvider.GITLAB: GitLabEnv(),
}
