import argparse
import logging
import os
import sys

import config
from acme_client import AcmeClient
from app_gateway import ApplicationGatewayInstaller, GatewayRef
from blob_storage import BlobChallengePublisher
from errors import ConfigurationError, RenewalError
from jwk_utils import LocalAccountKey
from keyvault import create_acme_key, get_credential, get_secret, load_acme_key
from renew import RenewalSettings, renew_certificate

logger = logging.getLogger(__name__)

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
REQUIRED = ("domain", "email", "storage_account_url", "subscription_id", "resource_group", "gateway_name",
            "listener_cert_name")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Renew a certificate via ACME http-01 and install it on an Azure Application Gateway")
    parser.add_argument("--domain", help="primary domain, e.g. example.com")
    parser.add_argument("--www-domain", help="secondary domain (default: www.<domain>)")
    parser.add_argument("--email", default=config.CONTACT_EMAIL, help="ACME account contact email")
    parser.add_argument("--service", default=config.ACME_SERVICE, help="LE_PROD, LE_STAGE or a directory URL")
    parser.add_argument("--storage-account-url", default=config.STORAGE_ACCOUNT_URL)
    parser.add_argument("--storage-container", default=config.STORAGE_CONTAINER)
    parser.add_argument("--subscription-id", default=config.SUBSCRIPTION_ID)
    parser.add_argument("--resource-group", default=config.GATEWAY_RESOURCE_GROUP)
    parser.add_argument("--gateway-name", default=config.GATEWAY_NAME)
    parser.add_argument("--listener-cert-name", default=config.LISTENER_CERT_NAME)
    parser.add_argument("--vault-url", default=config.VAULT_URL, help="Key Vault holding the PFX password")
    parser.add_argument("--password-secret-name", default=config.PFX_PASSWORD_SECRET_NAME)
    parser.add_argument("--state-path", default=config.ACME_STATE_PATH)
    parser.add_argument("--log-level", default=config.LOG_LEVEL, type=str.upper, choices=LOG_LEVELS)
    return parser


def pfx_password(args, credential):
    if args.vault_url and args.password_secret_name:
        return get_secret(args.vault_url, args.password_secret_name, credential)
    password = os.environ.get("PFX_PASSWORD")
    if not password:
        raise ConfigurationError("Set --vault-url/--password-secret-name or PFX_PASSWORD", step="secret")
    return password


def account_key_hooks(credential):
    if not config.ACCOUNT_KEY_VAULT_URL:
        return None, None

    def key_factory():
        return create_acme_key(config.ACCOUNT_KEY_VAULT_URL, config.ACCOUNT_KEY_NAME, config.CREATED_KEY_SIZE,
                               credential)

    def key_loader(data):
        if data["type"] == LocalAccountKey.kind:
            return LocalAccountKey.from_json(data)
        return load_acme_key(data["key_id"], credential)

    return key_factory, key_loader


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    missing = [name for name in REQUIRED if not getattr(args, name)]
    if missing:
        logger.error("Missing required parameter(s): %s", ", ".join("--" + m.replace("_", "-") for m in missing))
        return 2

    try:
        credential = get_credential()
        key_factory, key_loader = account_key_hooks(credential)
        settings = RenewalSettings(
            service_name=args.service,
            contact_email=args.email,
            state_path=args.state_path,
            order_poll_interval=config.ORDER_POLL_INTERVAL,
            certificate_poll_interval=config.CERTIFICATE_POLL_INTERVAL,
            max_wait=config.POLL_MAX_WAIT or None,
            certificate_key_size=config.CERTIFICATE_KEY_SIZE,
            key_factory=key_factory,
            key_loader=key_loader,
        )
        result = renew_certificate(
            AcmeClient(),
            BlobChallengePublisher.from_account(args.storage_account_url, args.storage_container, credential),
            ApplicationGatewayInstaller(credential),
            args.domain,
            args.www_domain or "www." + args.domain,
            GatewayRef(args.subscription_id, args.resource_group, args.gateway_name),
            args.listener_cert_name,
            pfx_password(args, credential),
            settings,
        )
    except RenewalError as err:
        logger.error("Renewal failed: %s", err)
        return 1

    print("Certificate installed:", result.certificate_url, "->", result.ack)
    return 0


if __name__ == "__main__":
    sys.exit(main())
