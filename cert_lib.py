"""Utility functions for inspecting X.509 certificate files.

Provides the certificate inspection used by the trust-store compiler:
identity (fingerprint), the self-signed root heuristic, listing details,
the OpenSSL subject hash used for the anchor index, and downloading
certificates from URLs.
"""

from __future__ import annotations

import datetime
import os
from dataclasses import dataclass
from typing import Optional, Union

import requests
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from OpenSSL import crypto

from trust_errors import NotACertificateError

__all__ = [
    "CertificateInfo",
    "load_certificate",
    "read_certificate",
    "certificate_fingerprint",
    "fingerprint",
    "is_self_signed",
    "describe",
    "subject_hash",
    "format_dn",
    "pem_encode",
    "download_with_retry",
]

OID_ORDER = [
    x509.NameOID.COUNTRY_NAME,
    x509.NameOID.STATE_OR_PROVINCE_NAME,
    x509.NameOID.LOCALITY_NAME,
    x509.NameOID.ORGANIZATION_NAME,
    x509.NameOID.ORGANIZATIONAL_UNIT_NAME,
    x509.NameOID.COMMON_NAME,
    x509.NameOID.EMAIL_ADDRESS,
    x509.NameOID.SERIAL_NUMBER,
]

OID_LABELS = {
    x509.NameOID.COUNTRY_NAME: "C",
    x509.NameOID.STATE_OR_PROVINCE_NAME: "ST",
    x509.NameOID.LOCALITY_NAME: "L",
    x509.NameOID.ORGANIZATION_NAME: "O",
    x509.NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    x509.NameOID.COMMON_NAME: "CN",
    x509.NameOID.EMAIL_ADDRESS: "E",
    x509.NameOID.SERIAL_NUMBER: "SERIAL",
}


@dataclass(frozen=True)
class CertificateInfo:
    fingerprint: str
    subject: str
    issuer: str
    expiry: datetime.datetime


def load_certificate(cert_bytes: bytes) -> x509.Certificate:
    """Load a certificate from PEM or DER bytes.

    Tries PEM first, then DER. Raises ValueError if neither works.

    Parameters
    ----------
    cert_bytes : bytes
        Certificate in PEM or DER format.

    Returns
    -------
    x509.Certificate
        Parsed certificate object.

    Raises
    ------
    ValueError
        If the bytes cannot be parsed as PEM or DER.
    """
    try:
        return x509.load_pem_x509_certificate(cert_bytes, backend=default_backend())
    except ValueError:
        try:
            return x509.load_der_x509_certificate(cert_bytes, backend=default_backend())
        except ValueError as e:
            raise ValueError("Failed to parse certificate as PEM or DER") from e


def read_certificate(path: Union[str, os.PathLike]) -> x509.Certificate:
    """Read and parse a certificate file.

    Raises
    ------
    NotACertificateError
        If the file cannot be read or does not hold a PEM or DER certificate.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise NotACertificateError(path, f"unreadable ({e.strerror or e})") from e
    try:
        return load_certificate(data)
    except ValueError as e:
        raise NotACertificateError(path) from e


def certificate_fingerprint(cert: x509.Certificate) -> str:
    """SHA-256 over the DER encoding, lowercase hex."""
    return cert.fingerprint(hashes.SHA256()).hex()


def fingerprint(path: Union[str, os.PathLike]) -> str:
    """Return the identity of the certificate stored in ``path``.

    PEM and DER copies of the same certificate share one identity, since
    the digest is always taken over the DER encoding.
    """
    return certificate_fingerprint(read_certificate(path))


def is_self_signed(path: Union[str, os.PathLike]) -> bool:
    """Root CA heuristic: issuer and subject DNs are textually identical.

    Basic constraints and key usage are deliberately not consulted, so a
    self-signed end-entity certificate also counts as a root.
    """
    cert = read_certificate(path)
    return cert.issuer.rfc4514_string() == cert.subject.rfc4514_string()


def format_dn(name: x509.Name) -> str:
    """Format a DN in a stable, human readable attribute order."""
    attrs = {attr.oid: attr.value for attr in name}
    parts = []
    for oid in OID_ORDER:
        if oid in attrs:
            parts.append(f"{OID_LABELS[oid]}={attrs[oid]}")
    for attr in name:
        if attr.oid not in OID_ORDER:
            parts.append(f"{attr.oid.dotted_string}={attr.value}")
    return ", ".join(parts) if parts else "(empty DN)"


def describe(path: Union[str, os.PathLike]) -> CertificateInfo:
    """Return fingerprint, subject, issuer and expiry for listing."""
    cert = read_certificate(path)
    try:
        expiry = cert.not_valid_after_utc
    except AttributeError:
        expiry = cert.not_valid_after.replace(tzinfo=datetime.timezone.utc)
    return CertificateInfo(
        fingerprint=certificate_fingerprint(cert),
        subject=format_dn(cert.subject),
        issuer=format_dn(cert.issuer),
        expiry=expiry,
    )


def subject_hash(path: Union[str, os.PathLike]) -> str:
    """Return the OpenSSL subject name hash (as used by ``c_rehash``)."""
    cert = crypto.X509.from_cryptography(read_certificate(path))
    return f"{cert.subject_name_hash():08x}"


def pem_encode(path: Union[str, os.PathLike]) -> bytes:
    return read_certificate(path).public_bytes(serialization.Encoding.PEM)


def download_with_retry(
    url: str,
    *,
    timeout: int = 30,
    verify: bool = True,
    retries: int = 3,
) -> Optional[bytes]:
    """Download a certificate via HTTP with error handling.

    Parameters
    ----------
    url : str
        URL to download.
    timeout : int, optional
        Request timeout in seconds (default: 30).
    verify : bool, optional
        Enable SSL certificate verification (default: True).
    retries : int, optional
        Number of attempts before giving up (default: 3).

    Returns
    -------
    bytes or None
        Downloaded certificate bytes, or None on failure or if the content
        is not a PEM or DER certificate.
    """
    if not isinstance(url, str):
        return None
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        return None

    for _ in range(max(1, retries)):
        try:
            r = requests.get(url, timeout=timeout, verify=verify)
            r.raise_for_status()
        except requests.RequestException:
            continue
        try:
            load_certificate(r.content)
        except ValueError:
            return None
        return r.content
    return None
