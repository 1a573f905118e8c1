import dataclasses
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional

import requests

from certificate import export_pfx, make_csr
from config import ACME_DIRECTORIES, CREATED_KEY_SIZE, EAB_HMAC_KEY, EAB_KID
from errors import AcmeProtocolError, ChallengeError, ConfigurationError, ExportError, OrderInvalidError, \
    PollTimeoutError
from jwk_utils import LocalAccountKey, b64url, build_eab, sign_jws, thumbprint

logger = logging.getLogger(__name__)

USER_AGENT = "appgw-acme"
JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"
HTTP_01 = "http-01"
CHALLENGE_PREFIX = ".well-known/acme-challenge/"


@dataclass(frozen=True)
class Identifier:
    value: str
    type: str = "dns"

    def to_json(self):
        return {"type": self.type, "value": self.value}


@dataclass(frozen=True)
class Challenge:
    type: str
    url: str
    token: Optional[str] = None
    status: str = "pending"
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, data):
        return cls(type=data["type"], url=data["url"], token=data.get("token"),
                   status=data.get("status", "pending"), error=data.get("error"))

    @property
    def object_name(self):
        return CHALLENGE_PREFIX + self.token


@dataclass(frozen=True)
class Authorization:
    url: str
    identifier: Identifier
    status: str
    challenges: tuple = ()

    @classmethod
    def from_json(cls, url, data):
        ident = data["identifier"]
        return cls(url=url, identifier=Identifier(ident["value"], ident.get("type", "dns")),
                   status=data.get("status", "pending"),
                   challenges=tuple(Challenge.from_json(c) for c in data.get("challenges", [])))

    def http_challenge(self):
        matching = [c for c in self.challenges if c.type == HTTP_01]
        if not matching:
            offered = ", ".join(c.type for c in self.challenges) or "none"
            raise ChallengeError(f"No {HTTP_01} challenge offered (got: {offered})",
                                 step="select-challenge", identifier=self.identifier.value)
        return matching[0]


@dataclass(frozen=True)
class Order:
    url: str
    status: str
    identifiers: tuple
    authorizations: tuple
    finalize: str
    certificate: Optional[str] = None
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, url, data):
        return cls(url=url, status=data["status"],
                   identifiers=tuple(Identifier(i["value"], i.get("type", "dns")) for i in data["identifiers"]),
                   authorizations=tuple(data.get("authorizations", [])),
                   finalize=data["finalize"], certificate=data.get("certificate"), error=data.get("error"))


@dataclass(frozen=True)
class AcmeState:
    """Session with the CA, threaded through every call.

    Each signed request consumes ``nonce`` and the call returns a new state
    carrying the nonce the CA handed back.
    """
    directory: dict = field(compare=False)
    account_key: object = field(compare=False)
    nonce: Optional[str] = None
    account_url: Optional[str] = None

    def to_json(self):
        return {
            "directory": self.directory,
            "account_url": self.account_url,
            "account_key": self.account_key.to_json(),
        }


def resolve_directory_url(service_name):
    if service_name in ACME_DIRECTORIES:
        return ACME_DIRECTORIES[service_name]
    if service_name.startswith("https://"):
        return service_name
    raise ConfigurationError(f"Unknown ACME service {service_name!r}", step="directory")


def _problem_of(resp):
    try:
        return resp.json()
    except ValueError:
        return {"detail": resp.text}


def _body(resp, step, identifier=None):
    try:
        body = resp.json()
    except ValueError as err:
        raise AcmeProtocolError(f"{step}: CA returned a non-JSON body ({resp.status_code})", step=step,
                                identifier=identifier, status=resp.status_code) from err
    if not isinstance(body, dict):
        raise AcmeProtocolError(f"{step}: CA returned {type(body).__name__}, expected an object", step=step,
                                identifier=identifier, status=resp.status_code)
    return body


def _decode(resp, step, parse, *args, identifier=None):
    """Build a resource from a response body, turning a malformed body into AcmeProtocolError."""
    body = _body(resp, step, identifier)
    try:
        return parse(*args, body)
    except (KeyError, TypeError) as err:
        raise AcmeProtocolError(f"{step}: malformed response, missing or bad field {err}", step=step,
                                identifier=identifier, status=resp.status_code) from err


def _location(resp, step):
    location = resp.headers.get("Location")
    if not location:
        raise AcmeProtocolError(f"{step}: CA response has no Location header", step=step, status=resp.status_code)
    return location


class AcmeClient:
    def __init__(self, session=None, eab_kid=EAB_KID, eab_hmac_key=EAB_HMAC_KEY):
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = USER_AGENT
        self.session = session
        self.eab_kid = eab_kid
        self.eab_hmac_key = eab_hmac_key

    def _request(self, method, url, step, identifier=None, **kwargs):
        try:
            return getattr(self.session, method)(url, **kwargs)
        except requests.RequestException as err:
            raise AcmeProtocolError(f"Request to {url} failed: {err}", step=step, identifier=identifier) from err

    def _new_nonce(self, directory):
        resp = self._request("head", directory["newNonce"], "nonce")
        nonce = resp.headers.get("Replay-Nonce")
        if resp.status_code >= 400 or not nonce:
            raise AcmeProtocolError(f"Could not get a nonce: {resp.status_code}", step="nonce",
                                    status=resp.status_code)
        return nonce

    def _post(self, state, url, payload, step, identifier=None, use_kid=True, expected=(200,), headers=None):
        protected = {
            "alg": state.account_key.alg,
            "nonce": state.nonce or self._new_nonce(state.directory),
            "url": url,
        }
        if use_kid:
            protected["kid"] = state.account_url
        else:
            protected["jwk"] = state.account_key.jwk

        jws_obj = sign_jws(state.account_key, protected, payload)
        request_headers = {"Content-Type": JOSE_CONTENT_TYPE}
        request_headers.update(headers or {})
        logger.debug("POST %s (%s)", url, step)
        resp = self._request("post", url, step, identifier, data=json.dumps(jws_obj), headers=request_headers)
        state = dataclasses.replace(state, nonce=resp.headers.get("Replay-Nonce"))

        if resp.status_code not in expected:
            problem = _problem_of(resp)
            raise AcmeProtocolError(
                f"{step} failed: {resp.status_code} {problem.get('type', '')} {problem.get('detail', '')}".strip(),
                step=step, identifier=identifier, status=resp.status_code, problem=problem)
        return resp, state

    def bootstrap(self, service_name, contact_email, key_factory=None):
        """Fetch the directory, create a fresh account key and register it."""
        directory_url = resolve_directory_url(service_name)
        resp = self._request("get", directory_url, "directory")
        if resp.status_code >= 400:
            raise AcmeProtocolError(f"Directory {directory_url} returned {resp.status_code}",
                                    step="directory", status=resp.status_code)
        directory = _body(resp, "directory")
        missing = [name for name in ("newNonce", "newAccount", "newOrder") if name not in directory]
        if missing:
            raise AcmeProtocolError(f"Directory {directory_url} lacks {', '.join(missing)}", step="directory",
                                    status=resp.status_code)

        if key_factory is None:
            account_key = LocalAccountKey.generate(CREATED_KEY_SIZE)
        else:
            account_key = key_factory()
        state = AcmeState(directory=directory, account_key=account_key, nonce=self._new_nonce(directory))

        return self.register_account(state, contact_email)

    def register_account(self, state, contact_email):
        payload = {
            "termsOfServiceAgreed": True,
            "contact": ["mailto:" + contact_email],
        }
        if self.eab_kid and self.eab_hmac_key:
            payload["externalAccountBinding"] = build_eab(
                state.account_key.jwk,
                self.eab_hmac_key,
                self.eab_kid,
                state.directory["newAccount"]
            )
        resp, state = self._post(state, state.directory["newAccount"], payload, "register-account",
                                 use_kid=False, expected=(200, 201))
        state = dataclasses.replace(state, account_url=_location(resp, "register-account"))

        tos = state.directory.get("meta", {}).get("termsOfService")
        if tos:
            logger.info("Terms of service at %s accepted", tos)
        logger.info("ACME account %s: %s", "already exists" if resp.status_code == 200 else "registered",
                    state.account_url)
        return state

    def save_state(self, state, path):
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(state.to_json(), f, indent=2)

    def reload(self, path, key_loader=None):
        """Re-read a saved session and pick up a fresh nonce."""
        with open(path) as f:
            data = json.load(f)

        key_data = data["account_key"]
        if key_loader is None:
            if key_data.get("type") != LocalAccountKey.kind:
                raise ConfigurationError(f"No loader for account key type {key_data.get('type')!r}",
                                         step="reload")
            key_loader = LocalAccountKey.from_json
        directory = data["directory"]

        return AcmeState(directory=directory, account_key=key_loader(key_data),
                         nonce=self._new_nonce(directory), account_url=data["account_url"])

    def create_order(self, state, identifiers):
        payload = {"identifiers": [i.to_json() for i in identifiers]}
        resp, state = self._post(state, state.directory["newOrder"], payload, "create-order", expected=(201,))
        order = _decode(resp, "create-order", Order.from_json, _location(resp, "create-order"))
        logger.info("Created order %s for %s", order.url, ", ".join(i.value for i in order.identifiers))
        return order, state

    def fetch_authorizations(self, state, order):
        authorizations = []
        for url in order.authorizations:
            resp, state = self._post(state, url, None, "fetch-authorization")
            authorizations.append(_decode(resp, "fetch-authorization", Authorization.from_json, url))

        return authorizations, state

    def key_authorization(self, state, challenge):
        return f"{challenge.token}.{thumbprint(state.account_key.jwk)}"

    def complete_challenge(self, state, challenge, identifier=None):
        # An empty object, not an empty payload, tells the CA to start validating
        resp, state = self._post(state, challenge.url, {}, "complete-challenge", identifier=identifier)
        return _decode(resp, "complete-challenge", Challenge.from_json, identifier=identifier), state

    def poll_until(self, state, order, statuses, interval, max_wait=None):
        """Re-fetch ``order`` every ``interval`` seconds until its status is in ``statuses``.

        Raises PollTimeoutError once ``max_wait`` seconds have passed, never
        when ``max_wait`` is falsy.
        """
        statuses = set(statuses)
        deadline = time.monotonic() + max_wait if max_wait else None
        while True:
            resp, state = self._post(state, order.url, None, "poll-order")
            order = _decode(resp, "poll-order", Order.from_json, order.url)
            if order.status in statuses:
                return order, state
            if order.status == "invalid":
                raise OrderInvalidError(f"Order {order.url} became invalid", step="poll-order",
                                        problem=order.error)
            if deadline is not None and time.monotonic() + interval > deadline:
                raise PollTimeoutError(f"Order {order.url} still {order.status} after {max_wait:g}s "
                                       f"waiting for {'/'.join(sorted(statuses))}", step="poll-order")
            logger.debug("Order %s is %s, checking again in %gs", order.url, order.status, interval)
            time.sleep(interval)

    def finalize(self, state, order, key):
        if order.status != "ready":
            raise AcmeProtocolError(f"Order {order.url} is {order.status}, not ready", step="finalize")

        payload = {"csr": b64url(make_csr(key, order.identifiers))}
        resp, state = self._post(state, order.finalize, payload, "finalize")
        logger.info("Submitted CSR for order %s", order.url)
        return _decode(resp, "finalize", Order.from_json, order.url), state

    def await_certificate_url(self, state, order, interval, max_wait=None):
        order, state = self.poll_until(state, order, {"valid", "invalid"}, interval, max_wait)
        if order.status == "invalid":
            raise OrderInvalidError(f"Order {order.url} became invalid during issuance", step="await-certificate",
                                    problem=order.error)
        if not order.certificate:
            raise AcmeProtocolError(f"Order {order.url} is valid but has no certificate URL",
                                    step="await-certificate")
        logger.info("Certificate issued: %s", order.certificate)
        return order, state

    def download_certificate(self, state, order):
        if not order.certificate:
            raise ExportError(f"Order {order.url} has no certificate URL yet", step="download")
        resp, state = self._post(state, order.certificate, None, "download",
                                 headers={"Accept": PEM_CHAIN_CONTENT_TYPE})
        return resp.text, state

    def export(self, state, order, key, password, friendly_name=None):
        if not order.certificate:
            raise ExportError(f"Order {order.url} has no certificate URL yet", step="export")
        pem_chain, state = self.download_certificate(state, order)
        return export_pfx(pem_chain, key, password, friendly_name), state
