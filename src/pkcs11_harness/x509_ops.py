from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from asn1crypto import pem, x509


@dataclass(frozen=True)
class CertificateSummary:
    """Fields of an issued certificate that provisioning checks."""

    serial: int
    common_name: str | None
    organization: str | None
    issuer_common_name: str | None
    is_ca: bool
    self_issued: bool


def _load_pem_or_der(data: bytes | str) -> bytes:
    payload = data.encode("utf-8") if isinstance(data, str) else data
    if pem.detect(payload):
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        if pem_type != "CERTIFICATE":
            raise ValueError(f"Expected PEM type 'CERTIFICATE', received '{pem_type}'.")
        return der_bytes
    return payload


def load_certificate(data: bytes | str) -> x509.Certificate:
    return x509.Certificate.load(_load_pem_or_der(data))


def load_certificate_file(path: Path) -> x509.Certificate:
    return load_certificate(path.read_bytes())


def _name_field(name: x509.Name, field: str) -> str | None:
    value = name.native.get(field)
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def summarize_certificate(certificate: x509.Certificate) -> CertificateSummary:
    tbs = certificate["tbs_certificate"]
    subject = tbs["subject"]
    issuer = tbs["issuer"]
    return CertificateSummary(
        serial=certificate.serial_number,
        common_name=_name_field(subject, "common_name"),
        organization=_name_field(subject, "organization_name"),
        issuer_common_name=_name_field(issuer, "common_name"),
        is_ca=bool(certificate.ca),
        self_issued=subject.dump() == issuer.dump(),
    )


def issued_by(certificate: x509.Certificate, issuer: x509.Certificate) -> bool:
    return (
        certificate["tbs_certificate"]["issuer"].dump()
        == issuer["tbs_certificate"]["subject"].dump()
    )


def signed_payload(certificate: x509.Certificate) -> tuple[bytes, bytes, str, str]:
    """
    Return (tbs_der, signature, signature_algo, hash_algo).

    ``signature_algo`` is asn1crypto's name, e.g. ``rsassa_pkcs1v15`` or
    ``ecdsa``.
    """
    algorithm = certificate["signature_algorithm"]
    return (
        certificate["tbs_certificate"].dump(),
        certificate["signature_value"].native,
        algorithm.signature_algo,
        algorithm.hash_algo,
    )
