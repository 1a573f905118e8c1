import hashlib
import logging

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.keyvault.keys import KeyClient, KeyVaultKeyIdentifier
from azure.keyvault.keys.crypto import CryptographyClient, SignatureAlgorithm
from azure.keyvault.secrets import SecretClient

from errors import ConfigurationError
from jwk_utils import jwk_from_kv_key

logger = logging.getLogger(__name__)


def get_credential():
    return DefaultAzureCredential()


class KeyVaultAccountKey:
    """ACME account key whose private half never leaves Key Vault."""

    kind = "keyvault"
    alg = "RS256"

    def __init__(self, kv_key, crypto_client):
        self.kv_key = kv_key
        self.jwk = jwk_from_kv_key(kv_key)
        self.crypto_client = crypto_client

    def sign(self, signing_input: bytes) -> bytes:
        digest = hashlib.sha256(signing_input).digest()
        signed = self.crypto_client.sign(SignatureAlgorithm.rs256, digest)
        return signed.signature

    def to_json(self):
        return {"type": self.kind, "key_id": self.kv_key.id}


def create_acme_key(vault_url, name, size, credential):
    # create_rsa_key on an existing name adds a new version, so every run gets a fresh key
    try:
        kv_key = KeyClient(vault_url, credential).create_rsa_key(name=name, size=size)
    except AzureError as err:
        raise ConfigurationError(f"Could not create account key {name} in {vault_url}: {err}",
                                 step="account-key") from err
    logger.info("Created account key version %s in %s", kv_key.properties.version, vault_url)
    return KeyVaultAccountKey(kv_key, CryptographyClient(kv_key.id, credential))


def load_acme_key(key_id, credential):
    ident = KeyVaultKeyIdentifier(key_id)
    try:
        kv_key = KeyClient(ident.vault_url, credential).get_key(ident.name, ident.version)
    except AzureError as err:
        raise ConfigurationError(f"Could not load account key {key_id}: {err}", step="account-key") from err
    return KeyVaultAccountKey(kv_key, CryptographyClient(kv_key.id, credential))


def get_secret(vault_url, name, credential):
    try:
        secret = SecretClient(vault_url, credential).get_secret(name)
    except AzureError as err:
        raise ConfigurationError(f"Could not read secret {name} from {vault_url}: {err}",
                                 step="secret") from err
    if not secret.value:
        raise ConfigurationError(f"Secret {name} in {vault_url} is empty", step="secret")
    return secret.value
