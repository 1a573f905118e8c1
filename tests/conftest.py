"""Shared fixtures: an in-process ACME CA, a blob-like publisher and a fake clock."""

import base64
import datetime
import hashlib
import json

import pytest
from azure.core.exceptions import AzureError
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.x509.oid import NameOID

import acme_client
from acme_client import AcmeClient
from jwk_utils import LocalAccountKey

BASE = "https://ca.test"
DIRECTORY_URL = BASE + "/directory"


def _b64decode(data):
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _b64int(data):
    return int.from_bytes(_b64decode(data), "big")


def _jwk_thumbprint(jwk):
    canonical = json.dumps({"e": jwk["e"], "kty": jwk["kty"], "n": jwk["n"]}, separators=(",", ":"))
    return base64.urlsafe_b64encode(hashlib.sha256(canonical.encode()).digest()).rstrip(b"=").decode()


class FakeResponse:
    def __init__(self, status_code, body=None, headers=None, text=None):
        self.status_code = status_code
        self._body = body
        self.headers = dict(headers or {})
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("response has no JSON body")
        return self._body


class FakePublisher:
    def __init__(self, fail_put=False, fail_delete=()):
        self.objects = {}
        self.calls = []
        self.fail_put = fail_put
        self.fail_delete = set(fail_delete)

    def put(self, name, content):
        self.calls.append(("put", name))
        if self.fail_put:
            raise AzureError("storage unavailable")
        self.objects[name] = content

    def delete(self, name):
        self.calls.append(("delete", name))
        if name in self.fail_delete:
            raise AzureError("delete refused")
        self.objects.pop(name, None)


class FakeCA:
    """Just enough of RFC 8555 to drive a two-identifier http-01 order.

    Every POST must carry a JWS whose signature verifies and whose nonce was
    issued by this CA and not used before. Challenges are validated by
    reading ``publisher.objects``.
    """

    def __init__(self, publisher, final_status="ready", ready_after=1, processing_polls=1, offer_http=True):
        self.publisher = publisher
        self.final_status = final_status
        self.ready_after = ready_after
        self.processing_polls = processing_polls
        self.offer_http = offer_http

        self.directory = {
            "newNonce": BASE + "/new-nonce",
            "newAccount": BASE + "/new-account",
            "newOrder": BASE + "/new-order",
            "meta": {"termsOfService": BASE + "/terms"},
        }
        self.nonces = set()
        self.nonce_counter = 0
        self.accounts = {}
        self.account_payloads = []
        self.requests = []
        self.order_polls = []
        self.finalize_calls = 0
        self.identifiers = []
        self.authzs = {}
        self.challenges = {}
        self.order_status = None
        self.certificate_pem = None

        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake ACME Intermediate")])
        now = datetime.datetime.now(datetime.timezone.utc)
        self.ca_cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.ca_key, hashes.SHA256())
        )

    # requests.Session surface

    def get(self, url, **kwargs):
        if url == DIRECTORY_URL:
            return FakeResponse(200, self.directory)
        return FakeResponse(404, {"type": "urn:ietf:params:acme:error:malformed", "detail": "not found"})

    def head(self, url, **kwargs):
        if url == self.directory["newNonce"]:
            return FakeResponse(200, headers={"Replay-Nonce": self._new_nonce()})
        return FakeResponse(404)

    def post(self, url, data=None, headers=None):
        assert headers["Content-Type"] == "application/jose+json"
        jws = json.loads(data)
        protected = json.loads(_b64decode(jws["protected"]))
        payload = None if jws["payload"] == "" else json.loads(_b64decode(jws["payload"]))

        if protected.get("nonce") not in self.nonces:
            return self._problem(400, "badNonce", "nonce unknown or already used")
        self.nonces.discard(protected["nonce"])
        if protected.get("url") != url:
            return self._problem(400, "unauthorized", "url mismatch")

        jwk = protected["jwk"] if "jwk" in protected else self.accounts.get(protected.get("kid"))
        if jwk is None:
            return self._problem(400, "accountDoesNotExist", "unknown kid")
        public_key = rsa.RSAPublicNumbers(_b64int(jwk["e"]), _b64int(jwk["n"])).public_key()
        signing_input = f"{jws['protected']}.{jws['payload']}".encode()
        public_key.verify(_b64decode(jws["signature"]), signing_input, padding.PKCS1v15(), hashes.SHA256())

        self.requests.append((url, payload))
        resp = self._route(url, payload, jwk, headers)
        resp.headers["Replay-Nonce"] = self._new_nonce()
        return resp

    # helpers

    def _new_nonce(self):
        self.nonce_counter += 1
        nonce = f"nonce-{self.nonce_counter}"
        self.nonces.add(nonce)
        return nonce

    def _problem(self, status, kind, detail):
        return FakeResponse(status, {"type": "urn:ietf:params:acme:error:" + kind, "detail": detail})

    def _order_json(self):
        body = {
            "status": self.order_status,
            "identifiers": [{"type": "dns", "value": v} for v in self.identifiers],
            "authorizations": list(self.authzs),
            "finalize": BASE + "/order/1/finalize",
        }
        if self.certificate_pem:
            body["certificate"] = BASE + "/cert/1"
        return body

    def _route(self, url, payload, jwk, headers):
        if url == self.directory["newAccount"]:
            self.account_payloads.append(payload)
            account_url = f"{BASE}/acct/{len(self.accounts) + 1}"
            self.accounts[account_url] = jwk
            return FakeResponse(201, {"status": "valid", "contact": payload["contact"]},
                                headers={"Location": account_url})

        if url == self.directory["newOrder"]:
            self.identifiers = [i["value"] for i in payload["identifiers"]]
            for n, value in enumerate(self.identifiers, 1):
                challenges = [{"type": "dns-01", "url": f"{BASE}/chall/{n}/dns", "token": f"dnstoken{n}",
                               "status": "pending"}]
                if self.offer_http:
                    http = {"type": "http-01", "url": f"{BASE}/chall/{n}", "token": f"token-{n}_x",
                            "status": "pending"}
                    challenges.append(http)
                    self.challenges[http["url"]] = (f"{BASE}/authz/{n}", http)
                self.authzs[f"{BASE}/authz/{n}"] = {
                    "status": "pending",
                    "identifier": {"type": "dns", "value": value},
                    "challenges": challenges,
                }
            self.order_status = "pending"
            return FakeResponse(201, self._order_json(), headers={"Location": BASE + "/order/1"})

        if url in self.authzs:
            if payload is not None:
                return self._problem(400, "malformed", "authorization fetch must be POST-as-GET")
            return FakeResponse(200, self.authzs[url])

        if url in self.challenges:
            if payload != {}:
                return self._problem(400, "malformed", "challenge response must be {}")
            authz_url, challenge = self.challenges[url]
            name = ".well-known/acme-challenge/" + challenge["token"]
            expected = f"{challenge['token']}.{_jwk_thumbprint(jwk)}"
            if self.publisher.objects.get(name) == expected:
                challenge["status"] = "valid"
            else:
                challenge["status"] = "invalid"
                challenge["error"] = {"type": "urn:ietf:params:acme:error:unauthorized",
                                      "detail": f"wrong content at {name}"}
            self.authzs[authz_url]["status"] = challenge["status"]
            return FakeResponse(200, challenge)

        if url == BASE + "/order/1":
            self._advance_order()
            self.order_polls.append(self.order_status)
            return FakeResponse(200, self._order_json())

        if url == BASE + "/order/1/finalize":
            self.finalize_calls += 1
            if self.order_status != "ready":
                return self._problem(403, "orderNotReady", "order is " + self.order_status)
            self.csr = x509.load_der_x509_csr(_b64decode(payload["csr"]))
            self.order_status = "processing"
            return FakeResponse(200, self._order_json())

        if url == BASE + "/cert/1":
            assert headers.get("Accept") == "application/pem-certificate-chain"
            return FakeResponse(200, text=self.certificate_pem)

        return self._problem(404, "malformed", "no such resource")

    def _advance_order(self):
        if self.order_status == "pending":
            statuses = [a["status"] for a in self.authzs.values()]
            if "invalid" in statuses:
                self.order_status = "invalid"
            elif all(s == "valid" for s in statuses):
                if self.ready_after > 0:
                    self.ready_after -= 1
                else:
                    self.order_status = self.final_status
        elif self.order_status == "processing":
            if self.processing_polls > 0:
                self.processing_polls -= 1
            else:
                self._issue()
                self.order_status = "valid"

    def _issue(self):
        now = datetime.datetime.now(datetime.timezone.utc)
        san = self.csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        cert = (
            x509.CertificateBuilder()
            .subject_name(self.csr.subject)
            .issuer_name(self.ca_cert.subject)
            .public_key(self.csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=1))
            .not_valid_after(now + datetime.timedelta(days=90))
            .add_extension(san, critical=False)
            .sign(self.ca_key, hashes.SHA256())
        )
        self.certificate_pem = b"".join(
            c.public_bytes(serialization.Encoding.PEM) for c in (cert, self.ca_cert)).decode()


class FakeClock:
    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(scope="session")
def account_key():
    return LocalAccountKey.generate(2048)


@pytest.fixture()
def publisher():
    return FakePublisher()


@pytest.fixture()
def ca(publisher):
    return FakeCA(publisher)


@pytest.fixture()
def client(ca):
    return AcmeClient(session=ca, eab_kid=None, eab_hmac_key=None)


@pytest.fixture()
def fake_clock(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(acme_client, "time", clock)
    return clock


@pytest.fixture()
def state(client, account_key):
    return client.bootstrap(DIRECTORY_URL, "admin@example.com", key_factory=lambda: account_key)
