from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from asn1crypto import x509

from .algorithms import KeyAlgorithm, get_key_algorithm
from .cert_template import CA_SERIAL, CertTemplate, IssuanceOverlay, compose
from .exceptions import ProvisioningError, UnsupportedFeatureError
from .tools import CertTool, Pkcs11Tool
from .uri import ObjectType, key_id_hex, make_uri
from .x509_ops import issued_by, load_certificate_file, summarize_certificate

_logger = logging.getLogger("pkcs11_harness.chain")


@dataclass(frozen=True)
class IssuedCertificate:
    label: str
    key_id: str
    common_name: str
    serial: int
    algorithm: str
    path: Path
    certificate: x509.Certificate
    is_ca: bool = False

    @property
    def der(self) -> bytes:
        return self.certificate.dump()


@dataclass(frozen=True)
class ImportedKey:
    label: str
    key_id: str
    algorithm: str


class ChainOfTrustBuilder:
    """
    Issues a self-signed CA and leaf certificates for keys held in a token.

    Serial numbers are handed out by this builder only: the CA gets 1 and
    every leaf the next integer, so one builder must drive a whole run.
    """

    def __init__(
        self,
        *,
        pkcs11_tool: Pkcs11Tool,
        certtool: CertTool,
        work_dir: Path,
        template: CertTemplate | None = None,
    ) -> None:
        self._pkcs11_tool = pkcs11_tool
        self._certtool = certtool
        self._work_dir = work_dir
        self._template = template or CertTemplate()
        self._serial = 0
        self._ca: IssuedCertificate | None = None
        self._issued: list[IssuedCertificate] = []

    @property
    def ca(self) -> IssuedCertificate:
        if self._ca is None:
            raise ProvisioningError("No CA has been issued yet.")
        return self._ca

    @property
    def issued(self) -> tuple[IssuedCertificate, ...]:
        return tuple(self._issued)

    @property
    def last_serial(self) -> int:
        return self._serial

    def _generate_keypair(self, algorithm: KeyAlgorithm, label: str, key_id: str) -> None:
        if not algorithm.generated:
            raise UnsupportedFeatureError(
                f"Key algorithm '{algorithm.name}' cannot be generated on the token."
            )
        self._pkcs11_tool.keypairgen(algorithm.tool_key_type or "", label, key_id)
        _logger.info(
            "Generated keypair label=%s id=%s algorithm=%s", label, key_id, algorithm.name
        )

    def _write_template(self, label: str, overlay: IssuanceOverlay) -> Path:
        composed = compose(self._template, overlay)
        path = self._work_dir / f"{label}.cfg"
        path.write_text(composed.render(), encoding="utf-8")
        return path

    def _read_back(
        self,
        path: Path,
        *,
        overlay: IssuanceOverlay,
        issuer: IssuedCertificate | None,
    ) -> x509.Certificate:
        try:
            certificate = load_certificate_file(path)
            summary = summarize_certificate(certificate)
        except (OSError, ValueError) as exc:
            raise ProvisioningError(f"Unable to read issued certificate {path}: {exc}") from exc

        problems: list[str] = []
        if summary.serial != overlay.serial:
            problems.append(f"serial {summary.serial} != {overlay.serial}")
        if summary.common_name != overlay.common_name.strip():
            problems.append(f"CN {summary.common_name!r} != {overlay.common_name!r}")
        if summary.is_ca != overlay.is_ca:
            problems.append(f"CA flag {summary.is_ca} != {overlay.is_ca}")
        if overlay.is_ca and summary.organization is not None:
            problems.append("CA subject carries an organization")
        if not overlay.is_ca and summary.organization is None:
            problems.append("leaf subject has no organization")
        if issuer is None:
            if not summary.self_issued:
                problems.append("CA certificate is not self-issued")
        elif not issued_by(certificate, issuer.certificate):
            problems.append(f"issuer is not {issuer.common_name!r}")
        if problems:
            raise ProvisioningError(
                f"Issued certificate {path.name} does not match the request: "
                + "; ".join(problems)
            )
        return certificate

    def issue_ca(
        self,
        *,
        label: str = "caCert",
        key_id: str | bytes | int = "0000",
        common_name: str = "Issuer",
        algorithm: str = "rsa2048",
    ) -> IssuedCertificate:
        if self._ca is not None:
            raise ProvisioningError(f"CA '{self._ca.label}' was already issued in this run.")
        resolved_algorithm = get_key_algorithm(algorithm)
        resolved_id = key_id_hex(key_id)

        self._generate_keypair(resolved_algorithm, label, resolved_id)
        overlay = IssuanceOverlay(common_name=common_name, serial=CA_SERIAL, is_ca=True)
        template_path = self._write_template(label, overlay)
        outfile = self._work_dir / f"{label}.crt"
        self._certtool.generate_self_signed(
            template=template_path,
            outfile=outfile,
            private_key_uri=make_uri(ObjectType.PRIVATE, label=label),
            public_key_uri=make_uri(ObjectType.PUBLIC, label=label),
        )
        self._serial = CA_SERIAL
        certificate = self._read_back(outfile, overlay=overlay, issuer=None)
        self._pkcs11_tool.write_object(outfile, "cert", label, resolved_id)

        issued = IssuedCertificate(
            label=label,
            key_id=resolved_id,
            common_name=common_name,
            serial=CA_SERIAL,
            algorithm=resolved_algorithm.name,
            path=outfile,
            certificate=certificate,
            is_ca=True,
        )
        self._ca = issued
        self._issued.append(issued)
        _logger.info("Issued self-signed CA label=%s serial=%d", label, CA_SERIAL)
        return issued

    def issue_leaf(
        self,
        label: str,
        common_name: str,
        key_id: str | bytes | int,
        algorithm: str = "rsa2048",
    ) -> IssuedCertificate:
        ca = self.ca
        resolved_algorithm = get_key_algorithm(algorithm)
        resolved_id = key_id_hex(key_id)

        self._generate_keypair(resolved_algorithm, label, resolved_id)
        self._serial += 1
        overlay = IssuanceOverlay(common_name=common_name, serial=self._serial, is_ca=False)
        template_path = self._write_template(label, overlay)
        outfile = self._work_dir / f"{label}.crt"
        self._certtool.generate_certificate(
            template=template_path,
            outfile=outfile,
            private_key_uri=make_uri(ObjectType.PRIVATE, label=label),
            public_key_uri=make_uri(ObjectType.PUBLIC, label=label),
            ca_certificate=ca.path,
            ca_private_key_uri=make_uri(ObjectType.PRIVATE, label=ca.label),
        )
        certificate = self._read_back(outfile, overlay=overlay, issuer=ca)

        issued = IssuedCertificate(
            label=label,
            key_id=resolved_id,
            common_name=common_name,
            serial=overlay.serial,
            algorithm=resolved_algorithm.name,
            path=outfile,
            certificate=certificate,
        )
        self._pkcs11_tool.write_object(outfile, "cert", label, resolved_id)
        self._issued.append(issued)
        _logger.info(
            "Issued leaf label=%s serial=%d issuer=%s", label, overlay.serial, ca.label
        )
        return issued

    def orphan(self, certificate: IssuedCertificate) -> None:
        """Delete the public key object, keeping private key and certificate."""
        if certificate.is_ca:
            raise ProvisioningError("The CA public key is needed to verify leaves.")
        self._pkcs11_tool.delete_object("pubkey", certificate.key_id)
        _logger.info(
            "Deleted public key of label=%s id=%s", certificate.label, certificate.key_id
        )

    def import_explicit_ec(
        self,
        *,
        label: str,
        key_id: str | bytes | int,
        private_der: Path,
        public_der: Path,
    ) -> ImportedKey:
        """Write pre-generated explicit-parameter EC key material into the token."""
        for path in (private_der, public_der):
            if not path.is_file():
                raise ProvisioningError(f"Explicit EC key material is missing: {path}")
        resolved_id = key_id_hex(key_id)
        self._pkcs11_tool.write_object(private_der, "privkey", label, resolved_id)
        self._pkcs11_tool.write_object(public_der, "pubkey", label, resolved_id)
        _logger.info("Imported explicit EC key label=%s id=%s", label, resolved_id)
        return ImportedKey(label=label, key_id=resolved_id, algorithm="ec_explicit")
