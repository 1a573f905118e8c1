import json
import base64
import hashlib
import hmac

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

def b64url(data) -> str:
    if isinstance(data, int):
        # Convert int to bytes (big-endian)
        byte_length = (data.bit_length() + 7) // 8
        data = data.to_bytes(byte_length, 'big')

    return base64.urlsafe_b64encode(data).rstrip(b'=').decode()

def b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + '=' * (-len(data) % 4))

def jwk_from_kv_key(kv_key):
    key = kv_key.key
    return {
        "kty": "RSA",
        "n": b64url(key.n),
        "e": b64url(key.e),
    }

def jwk_from_public_key(public_key):
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "n": b64url(numbers.n),
        "e": b64url(numbers.e),
    }


def thumbprint(jwk_dict):
    # RFC 7638: required members only, lexicographic order, no whitespace
    json_str = json.dumps({
        "e": jwk_dict["e"],
        "kty": jwk_dict["kty"],
        "n": jwk_dict["n"]
    }, separators=(',', ':'), sort_keys=True)
    digest = hashlib.sha256(json_str.encode()).digest()
    return b64url(digest)

def sign_jws(account_key, protected, payload):
    """Build a flattened JWS signed by ``account_key``.

    ``payload`` of None produces the empty payload used for POST-as-GET.
    """
    protected_b64 = b64url(json.dumps(protected, separators=(',', ':')).encode())
    payload_b64 = "" if payload is None else b64url(json.dumps(payload, separators=(',', ':')).encode())
    signing_input = f"{protected_b64}.{payload_b64}".encode()
    signature_b64 = b64url(account_key.sign(signing_input))

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": signature_b64
    }

def build_eab(jwk_dict, eab_hmac_key, eab_kid, acme_url):
    # Protected header for the EAB (symmetric key binding)
    protected = {
        "alg": "HS256",
        "kid": eab_kid,
        "url": acme_url
    }
    protected_b64 = b64url(json.dumps(protected, separators=(',', ':')).encode())
    payload_b64 = b64url(json.dumps(jwk_dict, separators=(',', ':')).encode())
    signing_input = f"{protected_b64}.{payload_b64}".encode()

    hmac_key = b64url_decode(eab_hmac_key)

    signature = hmac.new(hmac_key, signing_input, hashlib.sha256).digest()
    signature_b64 = b64url(signature)

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": signature_b64
    }


class LocalAccountKey:
    """RSA account key held in memory and signed with ``cryptography``."""

    kind = "local"
    alg = "RS256"

    def __init__(self, private_key):
        self.private_key = private_key
        self.jwk = jwk_from_public_key(private_key.public_key())

    @classmethod
    def generate(cls, key_size=2048):
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    @classmethod
    def from_json(cls, data):
        private_key = serialization.load_pem_private_key(data["pem"].encode(), password=None)
        return cls(private_key)

    def sign(self, signing_input: bytes) -> bytes:
        return self.private_key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    def to_json(self):
        pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return {"type": self.kind, "pem": pem.decode()}
