"""
kubestrap/deployment/pki.py

The PKI Generator. Produces a CertificateBundle: a self-signed CA plus one
server certificate whose subject-alternative names are exactly the
deduplicated set of cluster addresses and names, and the static bearer
tokens used by the control-plane components.

Re-running with an unchanged name set is a no-op: the rendered request is
fingerprinted and the certificate is only re-signed when the fingerprint
changes. When it does change, the CA and server key are reused so anything
that already trusts the CA keeps working.
"""

from __future__ import annotations

import datetime
import hashlib
import ipaddress
import json
import logging
import secrets
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kubestrap.errors import CertificationError
from kubestrap.models.node import LoadBalancerRecord, NodeRecord
from kubestrap.models.pki import AuthToken, CertificateBundle

logger = logging.getLogger(__name__)

SERVER_COMMON_NAME = "kubernetes"
ORGANIZATION = "Kubernetes"
CA_VALIDITY = datetime.timedelta(days=3650)
SERVER_VALIDITY = datetime.timedelta(days=365)
KEY_SIZE = 2048

# user, uid, groups
TOKEN_USERS: List[Tuple[str, str, List[str]]] = [
    ("admin", "admin", ["system:masters"]),
    ("system:kube-scheduler", "scheduler", []),
    ("system:kube-controller-manager", "controller-manager", []),
    ("kubelet", "kubelet", ["system:nodes"]),
    ("system:kube-proxy", "kube-proxy", []),
]

PrivateKey = rsa.RSAPrivateKey


def collect_subject_names(
    records: Sequence[NodeRecord],
    load_balancer: Optional[LoadBalancerRecord] = None,
    dns_name: Optional[str] = None,
    extra: Iterable[str] = (),
) -> List[str]:
    """Deduplicated, sorted union of every address and name the server answers on.

    Raises:
        CertificationError: If any record has no resolved private address.
    """
    unresolved = [rec.node_id for rec in records if not rec.private_ip]
    if unresolved:
        raise CertificationError(unresolved)

    names = set(extra)
    for rec in records:
        names.add(rec.private_ip or "")
        if rec.public_ip:
            names.add(rec.public_ip)
    if load_balancer is not None:
        names.update(load_balancer.endpoint_names)
    if dns_name:
        names.add(dns_name)
    names.discard("")
    return sorted(names)


def request_fingerprint(
    subject_names: Iterable[str], common_name: str = SERVER_COMMON_NAME
) -> str:
    """sha256 over the rendered request content (subject + sorted names)."""
    rendered = json.dumps(
        {
            "common_name": common_name,
            "organization": ORGANIZATION,
            "subject_names": sorted(set(subject_names)),
            "key_size": KEY_SIZE,
        },
        sort_keys=True,
    )
    return hashlib.sha256(rendered.encode("utf-8")).hexdigest()


def _general_name(value: str) -> Union[x509.IPAddress, x509.DNSName]:
    try:
        return x509.IPAddress(ipaddress.ip_address(value))
    except ValueError:
        return x509.DNSName(value)


def _new_key() -> PrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _key_pem(key: PrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def _load_key(pem: str) -> PrivateKey:
    key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("Stored key is not an RSA private key.")
    return key


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _build_ca(key: PrivateKey, now: datetime.datetime) -> x509.Certificate:
    subject = _name("Kubernetes CA")
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + CA_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .sign(key, hashes.SHA256())
    )


def build_signing_request(
    key: PrivateKey, subject_names: Sequence[str]
) -> x509.CertificateSigningRequest:
    """CSR for the server certificate listing exactly `subject_names`."""
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(_name(SERVER_COMMON_NAME))
        .add_extension(
            x509.SubjectAlternativeName([_general_name(n) for n in subject_names]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )


def sign_request(
    csr: x509.CertificateSigningRequest,
    ca_cert: x509.Certificate,
    ca_key: PrivateKey,
    now: datetime.datetime,
) -> x509.Certificate:
    """Sign a server CSR with the CA, carrying its SAN extension over unchanged."""
    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    return (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(ca_cert.subject)
        .public_key(csr.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + SERVER_VALIDITY)
        .add_extension(san, critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
            ),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )


def certificate_subject_names(cert_pem: str) -> List[str]:
    """SAN entries (addresses and DNS names) of a PEM certificate, sorted."""
    cert = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    names = [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
    names += san.get_values_for_type(x509.DNSName)
    return sorted(names)


def issue_tokens(existing: Sequence[AuthToken] = ()) -> List[AuthToken]:
    """One token per component user; tokens already issued are kept."""
    by_user = {tok.user: tok for tok in existing}
    return [
        by_user.get(user)
        or AuthToken(token=secrets.token_hex(16), user=user, uid=uid, groups=groups)
        for user, uid, groups in TOKEN_USERS
    ]


def generate_bundle(
    subject_names: Sequence[str],
    existing: Optional[CertificateBundle] = None,
    now: Optional[datetime.datetime] = None,
) -> CertificateBundle:
    """
    Sign a server certificate for `subject_names`.

    With an existing bundle, its CA, server key and tokens are reused and
    only the server certificate is re-signed; otherwise everything is new.
    """
    names = sorted(set(subject_names))
    if not names:
        raise ValueError("At least one subject name is required.")
    now = now or datetime.datetime.now(datetime.timezone.utc)

    if existing is not None:
        ca_key = _load_key(existing.ca_key_pem)
        ca_cert = x509.load_pem_x509_certificate(existing.ca_cert_pem.encode("utf-8"))
        server_key = _load_key(existing.server_key_pem)
    else:
        ca_key = _new_key()
        ca_cert = _build_ca(ca_key, now)
        server_key = _new_key()

    csr = build_signing_request(server_key, names)
    server_cert = sign_request(csr, ca_cert, ca_key, now)
    return CertificateBundle(
        ca_cert_pem=_cert_pem(ca_cert),
        ca_key_pem=_key_pem(ca_key),
        server_cert_pem=_cert_pem(server_cert),
        server_key_pem=_key_pem(server_key),
        subject_names=names,
        request_fingerprint=request_fingerprint(names),
        tokens=issue_tokens(existing.tokens if existing else ()),
    )


def ensure_bundle(
    subject_names: Sequence[str],
    existing: Optional[CertificateBundle] = None,
) -> Tuple[CertificateBundle, bool]:
    """
    Return (bundle, changed). The existing bundle is returned untouched when
    its request fingerprint matches the one rendered for `subject_names`.
    """
    fingerprint = request_fingerprint(subject_names)
    if existing is not None and existing.request_fingerprint == fingerprint:
        logger.info(
            "Certificate request unchanged (%s); skipping signing", fingerprint[:12]
        )
        return existing, False

    if existing is not None:
        added = sorted(set(subject_names) - set(existing.subject_names))
        removed = sorted(set(existing.subject_names) - set(subject_names))
        logger.info(
            "Re-signing server certificate with existing CA; added=%s removed=%s",
            added,
            removed,
        )
    else:
        logger.info("Generating new CA and server certificate")
    return generate_bundle(subject_names, existing), True
