"""
B2C initiator security credential.

Daraja expects the initiator password encrypted with the public key from
the gateway's X.509 certificate, RSA PKCS#1 v1.5 padding, base64 encoded.

Usage:
    from premiums.adapters.security_credential import get_security_credential

    credential = get_security_credential()
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from django.conf import settings

from premiums.exceptions import MpesaSecurityCredentialError

logger = logging.getLogger(__name__)


def _load_public_key(certificate_pem: str | bytes) -> rsa.RSAPublicKey:
    data = certificate_pem.encode() if isinstance(certificate_pem, str) else certificate_pem
    data = data.strip()

    if b"PRIVATE KEY" in data:
        raise MpesaSecurityCredentialError(
            "Expected the gateway certificate or public key, got a private key",
        )

    public_key = None
    loaders = (
        lambda raw: x509.load_pem_x509_certificate(raw).public_key(),
        lambda raw: x509.load_der_x509_certificate(raw).public_key(),
        serialization.load_pem_public_key,
        serialization.load_der_public_key,
    )
    for load in loaders:
        try:
            public_key = load(data)
            break
        except (ValueError, TypeError, UnsupportedAlgorithm):
            continue

    if public_key is None:
        raise MpesaSecurityCredentialError(
            "Could not parse the gateway certificate",
        )
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise MpesaSecurityCredentialError(
            "Gateway certificate does not carry an RSA public key",
            details={"key_type": type(public_key).__name__},
        )
    return public_key


def generate_security_credential(initiator_password: str, certificate_pem: str | bytes) -> str:
    """
    Encrypt the initiator password for the SecurityCredential field.

    Args:
        initiator_password: Plain initiator password
        certificate_pem: X.509 certificate or bare public key (PEM or DER)

    Raises:
        MpesaSecurityCredentialError: Empty password, unparsable input,
            a private key, or a non-RSA key
    """
    if not initiator_password:
        raise MpesaSecurityCredentialError("Initiator password is not configured")

    public_key = _load_public_key(certificate_pem)
    encrypted = public_key.encrypt(initiator_password.encode(), padding.PKCS1v15())
    return base64.b64encode(encrypted).decode("ascii")


def load_certificate(source: str) -> bytes:
    """Return certificate bytes from inline PEM text or a file path."""
    if not source:
        raise MpesaSecurityCredentialError("MPESA_CERTIFICATE is not configured")
    if "-----BEGIN" in source:
        return source.encode()
    try:
        return Path(source).read_bytes()
    except OSError as e:
        raise MpesaSecurityCredentialError(
            "Could not read the gateway certificate file",
            details={"path": source},
        ) from e


def get_security_credential() -> str:
    """
    SecurityCredential for B2C requests.

    A pre-computed MPESA_SECURITY_CREDENTIAL setting takes precedence.
    """
    precomputed = getattr(settings, "MPESA_SECURITY_CREDENTIAL", "")
    if precomputed:
        return precomputed

    credential = generate_security_credential(
        getattr(settings, "MPESA_INITIATOR_PASSWORD", ""),
        load_certificate(getattr(settings, "MPESA_CERTIFICATE", "")),
    )
    logger.debug("Generated B2C security credential")
    return credential
