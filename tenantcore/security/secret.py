"""
Secrets lookup for webhook and audit signing keys, from the environment or Vault.
"""
import logging
import os

logger = logging.getLogger(__name__)


class SecretsManager:
    def __init__(self, backend: str = None):
        self.use_vault = (backend or os.getenv("SECRETS_BACKEND", "env")) == "vault"
        if self.use_vault:
            import hvac
            self.vault_client = hvac.Client(
                url=os.getenv("VAULT_ADDR"),
                token=os.getenv("VAULT_TOKEN")
            )
            self.mount_point = os.getenv("VAULT_MOUNT_POINT", "secret")
        else:
            self.vault_client = None

    def get_secret(self, key: str, default=None):
        if not self.use_vault:
            return os.getenv(key, default)
        from hvac.exceptions import VaultError
        try:
            secret = self.vault_client.secrets.kv.v2.read_secret_version(
                path=key, mount_point=self.mount_point
            )
            return secret["data"]["data"]["value"]
        except (VaultError, KeyError) as e:
            logger.warning(f"Vault lookup for {key} failed, using default: {e}")
            return default
