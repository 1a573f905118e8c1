import base64
import logging
from dataclasses import dataclass

from azure.core.exceptions import AzureError
from azure.mgmt.network import NetworkManagementClient

from errors import InstallError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayRef:
    subscription_id: str
    resource_group: str
    name: str


class ApplicationGatewayInstaller:
    """Swaps the certificate behind an Application Gateway listener.

    The gateway update is a single PUT of the whole resource; if it fails the
    previous certificate stays in place.
    """

    def __init__(self, credential, client_factory=NetworkManagementClient):
        self.credential = credential
        self.client_factory = client_factory

    def install_certificate(self, gateway_ref, listener_cert_name, bundle, password):
        if not bundle:
            raise InstallError("Refusing to install an empty certificate bundle", step="install")
        client = self.client_factory(self.credential, gateway_ref.subscription_id)
        try:
            gateway = client.application_gateways.get(gateway_ref.resource_group, gateway_ref.name)
        except AzureError as err:
            raise InstallError(f"Could not load gateway {gateway_ref.name}: {err}", step="install") from err

        matching = [c for c in gateway.ssl_certificates or [] if c.name == listener_cert_name]
        if not matching:
            raise InstallError(f"Gateway {gateway_ref.name} has no SSL certificate named {listener_cert_name}",
                               step="install")
        ssl_cert = matching[0]
        ssl_cert.data = base64.b64encode(bundle).decode()
        ssl_cert.password = password
        ssl_cert.key_vault_secret_id = None

        logger.info("Updating certificate %s on gateway %s/%s", listener_cert_name,
                    gateway_ref.resource_group, gateway_ref.name)
        try:
            updated = client.application_gateways.begin_create_or_update(
                gateway_ref.resource_group, gateway_ref.name, gateway).result()
        except AzureError as err:
            raise InstallError(f"Gateway {gateway_ref.name} update failed: {err}", step="install") from err

        logger.info("Gateway %s provisioning state: %s", gateway_ref.name, updated.provisioning_state)
        return updated.provisioning_state
