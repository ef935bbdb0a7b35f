from __future__ import annotations

import logging
from typing import Any

import pkcs11
import pkcs11.util.ec as ec_util
from asn1crypto import x509
from pkcs11 import Attribute, MGF, Mechanism, ObjectClass

from .exceptions import ProvisioningError
from .uri import ObjectType, Pkcs11Uri, normalize_key_id
from .x509_ops import signed_payload

_logger = logging.getLogger("pkcs11_harness.inventory")

_OBJECT_CLASSES: dict[ObjectType, ObjectClass] = {
    ObjectType.PUBLIC: ObjectClass.PUBLIC_KEY,
    ObjectType.PRIVATE: ObjectClass.PRIVATE_KEY,
    ObjectType.CERT: ObjectClass.CERTIFICATE,
}

_PKCS1_MECHANISMS: dict[str, Mechanism] = {
    "sha1": Mechanism.SHA1_RSA_PKCS,
    "sha256": Mechanism.SHA256_RSA_PKCS,
    "sha384": Mechanism.SHA384_RSA_PKCS,
    "sha512": Mechanism.SHA512_RSA_PKCS,
}

_PSS_MECHANISMS: dict[str, tuple[Mechanism, Mechanism, MGF]] = {
    "sha256": (Mechanism.SHA256_RSA_PKCS_PSS, Mechanism.SHA256, MGF.SHA256),
    "sha384": (Mechanism.SHA384_RSA_PKCS_PSS, Mechanism.SHA384, MGF.SHA384),
    "sha512": (Mechanism.SHA512_RSA_PKCS_PSS, Mechanism.SHA512, MGF.SHA512),
}

_ECDSA_MECHANISMS: dict[str, Mechanism] = {
    "sha1": Mechanism.ECDSA_SHA1,
    "sha256": Mechanism.ECDSA_SHA256,
    "sha384": Mechanism.ECDSA_SHA384,
    "sha512": Mechanism.ECDSA_SHA512,
}


def _format_exception(exc: Exception) -> str:
    details = str(exc).strip()
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


def verification_parameters(
    certificate: x509.Certificate,
) -> tuple[bytes, bytes, Mechanism, Any]:
    """
    Map a certificate signature onto (data, signature, mechanism, param).

    ECDSA signatures are converted from DER to the raw r||s form PKCS#11
    expects.
    """
    tbs, signature, signature_algo, hash_algo = signed_payload(certificate)
    if signature_algo == "rsassa_pkcs1v15":
        mechanism = _PKCS1_MECHANISMS.get(hash_algo)
        if mechanism is not None:
            return tbs, signature, mechanism, None
    elif signature_algo == "rsassa_pss":
        spec = _PSS_MECHANISMS.get(hash_algo)
        if spec is not None:
            mechanism, digest, mgf = spec
            parameters = certificate["signature_algorithm"]["parameters"]
            salt_length = int(parameters["salt_length"].native)
            return tbs, signature, mechanism, (digest, mgf, salt_length)
    elif signature_algo == "ecdsa":
        mechanism = _ECDSA_MECHANISMS.get(hash_algo)
        if mechanism is not None:
            return tbs, ec_util.decode_ecdsa_signature(signature), mechanism, None
    raise ValueError(
        f"Unsupported certificate signature algorithm {signature_algo}/{hash_algo}."
    )


class TokenInventory:
    """
    Read-only view of a provisioned token through python-pkcs11.

    Lookups return None when nothing matches so callers can assert absence
    (for example a deleted public key) without catching exceptions.
    """

    def __init__(self, module_path: str, token_label: str, pin: str) -> None:
        self._module_path = module_path
        self._token_label = token_label
        self._pin = pin
        self._lib: pkcs11.lib | None = None
        self._session: pkcs11.Session | None = None

    def __enter__(self) -> "TokenInventory":
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def session(self) -> pkcs11.Session:
        if self._session is None:
            raise ProvisioningError("Token session is not open.")
        return self._session

    def open(self) -> None:
        if self._session is not None:
            _logger.debug("Token session already open.")
            return
        try:
            _logger.info(
                "Opening token session module=%s token_label=%s",
                self._module_path,
                self._token_label,
            )
            self._lib = pkcs11.lib(self._module_path)
            token = self._lib.get_token(token_label=self._token_label)
            self._session = token.open(user_pin=self._pin)
        except Exception as exc:
            _logger.exception("Failed to open token session.")
            raise ProvisioningError(
                f"Failed to open token session: {_format_exception(exc)}"
            ) from exc

    def close(self) -> None:
        if self._session is None:
            return
        self._session.close()
        self._session = None
        _logger.info("Token session closed.")

    def _get_key(self, object_class: ObjectClass, key_id: str | bytes | int) -> Any:
        raw_id = normalize_key_id(key_id)
        try:
            return self.session.get_key(object_class=object_class, id=raw_id)
        except pkcs11.exceptions.NoSuchKey:
            _logger.debug("No %s with id=%s", object_class, raw_id.hex())
            return None
        except Exception as exc:
            _logger.exception("Failed to look up %s id=%s", object_class, raw_id.hex())
            raise ProvisioningError(
                f"Failed to look up key id {raw_id.hex()}: {_format_exception(exc)}"
            ) from exc

    def find_private_key(self, key_id: str | bytes | int) -> pkcs11.PrivateKey | None:
        return self._get_key(ObjectClass.PRIVATE_KEY, key_id)

    def find_public_key(self, key_id: str | bytes | int) -> pkcs11.PublicKey | None:
        return self._get_key(ObjectClass.PUBLIC_KEY, key_id)

    def find_certificate(self, label: str) -> pkcs11.Certificate | None:
        matches = self.resolve(Pkcs11Uri(object_type=ObjectType.CERT, label=label))
        return matches[0] if matches else None

    def resolve(self, uri: str | Pkcs11Uri) -> list[pkcs11.Object]:
        """Return every token object the URI selects."""
        parsed = Pkcs11Uri.parse(uri) if isinstance(uri, str) else uri
        attributes: dict[Attribute, Any] = {}
        if parsed.object_type is not None:
            attributes[Attribute.CLASS] = _OBJECT_CLASSES[parsed.object_type]
        if parsed.key_id is not None:
            attributes[Attribute.ID] = parsed.key_id
        if parsed.label is not None:
            attributes[Attribute.LABEL] = parsed.label
        try:
            return list(self.session.get_objects(attributes))
        except Exception as exc:
            _logger.exception("Failed to resolve %s", parsed)
            raise ProvisioningError(
                f"Failed to resolve {parsed}: {_format_exception(exc)}"
            ) from exc

    def verify_certificate(
        self, certificate: x509.Certificate, issuer_key_id: str | bytes | int
    ) -> bool:
        public_key = self.find_public_key(issuer_key_id)
        if public_key is None:
            raise ProvisioningError(
                f"Issuer public key id {normalize_key_id(issuer_key_id).hex()} not found."
            )
        data, signature, mechanism, mechanism_param = verification_parameters(certificate)
        try:
            valid = public_key.verify(
                data,
                signature,
                mechanism=mechanism,
                mechanism_param=mechanism_param,
            )
        except Exception as exc:
            _logger.exception("Certificate signature verification errored.")
            raise ProvisioningError(
                f"Certificate verification failed: {_format_exception(exc)}"
            ) from exc
        _logger.info(
            "Verified certificate serial=%d mechanism=%s valid=%s",
            certificate.serial_number,
            mechanism,
            valid,
        )
        return bool(valid)
