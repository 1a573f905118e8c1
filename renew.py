import logging
from dataclasses import dataclass
from typing import Optional

from acme_client import Identifier
from certificate import new_certificate_key
from challenges import ChallengeResolver
from errors import AcmeProtocolError, ExportError, OrderInvalidError

logger = logging.getLogger(__name__)


@dataclass
class RenewalSettings:
    service_name: str
    contact_email: str
    state_path: str
    order_poll_interval: float = 10.0
    certificate_poll_interval: float = 15.0
    max_wait: Optional[float] = 600.0
    certificate_key_size: int = 2048
    key_factory: Optional[object] = None
    key_loader: Optional[object] = None


@dataclass
class RenewalResult:
    order_url: str
    certificate_url: str
    ack: object


def describe_failures(authorizations):
    failures = []
    for authz in authorizations:
        if authz.status == "valid":
            continue
        details = [c.error.get("detail", c.error.get("type", "")) for c in authz.challenges if c.error]
        failures.append(f"{authz.identifier.value} ({authz.status}{': ' + '; '.join(details) if details else ''})")
    return ", ".join(failures)


def renew_certificate(client, publisher, installer, domain, www_domain, gateway_ref, listener_cert_name,
                      password, settings):
    """Run one renewal from account bootstrap to gateway install."""
    state = client.bootstrap(settings.service_name, settings.contact_email, settings.key_factory)
    client.save_state(state, settings.state_path)
    state = client.reload(settings.state_path, settings.key_loader)

    order, state = client.create_order(state, [Identifier(domain), Identifier(www_domain)])
    authorizations, state = client.fetch_authorizations(state, order)

    with ChallengeResolver(client, publisher) as resolver:
        state = resolver.resolve(state, authorizations)
        order, state = client.poll_until(state, order, {"ready", "invalid"}, settings.order_poll_interval,
                                         settings.max_wait)

    if order.status == "invalid":
        try:
            authorizations, state = client.fetch_authorizations(state, order)
            reason = describe_failures(authorizations)
        except AcmeProtocolError as err:
            logger.warning("Could not fetch authorizations of invalid order %s: %s", order.url, err)
            reason = (order.error or {}).get("detail", "no detail from CA")
        raise OrderInvalidError(f"Order {order.url} is invalid: {reason}", step="authorize", problem=order.error)
    logger.info("Order %s is ready", order.url)

    key = new_certificate_key(settings.certificate_key_size)
    order, state = client.finalize(state, order, key)
    order, state = client.await_certificate_url(state, order, settings.certificate_poll_interval,
                                                settings.max_wait)
    bundle, state = client.export(state, order, key, password, friendly_name=domain)
    if not bundle:
        raise ExportError("PFX export produced no data", step="export")

    ack = installer.install_certificate(gateway_ref, listener_cert_name, bundle, password)
    logger.info("Installed certificate for %s and %s as %s", domain, www_domain, listener_cert_name)
    return RenewalResult(order_url=order.url, certificate_url=order.certificate, ack=ack)
