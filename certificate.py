import logging

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from errors import ExportError

logger = logging.getLogger(__name__)


def new_certificate_key(key_size=2048):
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def make_csr(private_key, identifiers):
    """DER-encoded CSR with the first identifier as CN and all of them as SANs."""
    domains = [i.value for i in identifiers]
    csr_builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(x509.NameOID.COMMON_NAME, domains[0])])
    )
    csr_builder = csr_builder.add_extension(
        x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
        critical=False,
    )
    csr = csr_builder.sign(private_key, hashes.SHA256())

    return csr.public_bytes(serialization.Encoding.DER)


def load_chain(pem_chain):
    try:
        certs = x509.load_pem_x509_certificates(pem_chain.encode())
    except ValueError as err:
        raise ExportError(f"Certificate chain is not valid PEM: {err}", step="export") from err
    return certs[0], certs[1:]


def export_pfx(pem_chain, private_key, password, friendly_name=None):
    if not password:
        raise ExportError("Refusing to export a PFX without a password", step="export")

    cert, intermediates = load_chain(pem_chain)
    if cert.public_key().public_numbers() != private_key.public_key().public_numbers():
        raise ExportError("Issued certificate does not match the certificate key", step="export")

    name = friendly_name.encode() if friendly_name else None
    bundle = pkcs12.serialize_key_and_certificates(
        name,
        private_key,
        cert,
        intermediates or None,
        serialization.BestAvailableEncryption(password.encode()),
    )
    logger.info("Exported PFX for %s (%d intermediate(s))",
                cert.subject.rfc4514_string(), len(intermediates))
    return bundle
