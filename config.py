import os


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


ACME_DIRECTORIES = {
    "LE_PROD": "https://acme-v02.api.letsencrypt.org/directory",
    "LE_STAGE": "https://acme-staging-v02.api.letsencrypt.org/directory",
}
ACME_SERVICE = os.environ.get("ACME_SERVICE", "LE_PROD")
CONTACT_EMAIL = os.environ.get("CONTACT_EMAIL")

# External account binding, only for CAs that require it
EAB_KID = os.environ.get("EAB_KID")
EAB_HMAC_KEY = os.environ.get("EAB_HMAC_KEY")

# Unset means a local account key is generated for every run
ACCOUNT_KEY_VAULT_URL = os.environ.get("ACCOUNT_KEY_VAULT_URL")
ACCOUNT_KEY_NAME = os.environ.get("ACCOUNT_KEY_NAME", "acme-account")
CREATED_KEY_SIZE = _env_int("CREATED_KEY_SIZE", 2048)
CERTIFICATE_KEY_SIZE = _env_int("CERTIFICATE_KEY_SIZE", 2048)

ACME_STATE_PATH = os.environ.get("ACME_STATE_PATH", "acme-state.json")

ORDER_POLL_INTERVAL = _env_float("ORDER_POLL_INTERVAL", 10.0)
CERTIFICATE_POLL_INTERVAL = _env_float("CERTIFICATE_POLL_INTERVAL", 15.0)
# 0 disables the bound
POLL_MAX_WAIT = _env_float("POLL_MAX_WAIT", 600.0)

STORAGE_ACCOUNT_URL = os.environ.get("STORAGE_ACCOUNT_URL")
STORAGE_CONTAINER = os.environ.get("STORAGE_CONTAINER", "$web")

SUBSCRIPTION_ID = os.environ.get("SUBSCRIPTION_ID")
GATEWAY_RESOURCE_GROUP = os.environ.get("GATEWAY_RESOURCE_GROUP")
GATEWAY_NAME = os.environ.get("GATEWAY_NAME")
LISTENER_CERT_NAME = os.environ.get("LISTENER_CERT_NAME")

VAULT_URL = os.environ.get("VAULT_URL")
PFX_PASSWORD_SECRET_NAME = os.environ.get("PFX_PASSWORD_SECRET_NAME")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
