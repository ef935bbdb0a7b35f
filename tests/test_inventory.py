from __future__ import annotations

from typing import Any

import pkcs11
import pytest
from asn1crypto import algos, x509
from pkcs11 import Attribute, MGF, Mechanism, ObjectClass

from conftest import build_certificate

from pkcs11_harness import inventory as inventory_module
from pkcs11_harness.exceptions import ProvisioningError
from pkcs11_harness.inventory import TokenInventory, verification_parameters


def _resign(certificate: x509.Certificate, algorithm: dict, signature: bytes) -> x509.Certificate:
    return x509.Certificate(
        {
            "tbs_certificate": certificate["tbs_certificate"],
            "signature_algorithm": algorithm,
            "signature_value": signature,
        }
    )


@pytest.fixture
def certificate() -> x509.Certificate:
    return build_certificate(
        common_name="My Test Cert", serial=2, is_ca=False, organization="PKCS11 Provider"
    )


def test_rsa_pkcs1_parameters(certificate: x509.Certificate) -> None:
    data, signature, mechanism, param = verification_parameters(certificate)
    assert data == certificate["tbs_certificate"].dump()
    assert signature == b"\x01" * 256
    assert mechanism is Mechanism.SHA256_RSA_PKCS
    assert param is None


def test_ecdsa_signature_is_converted_to_raw(certificate: x509.Certificate) -> None:
    der_signature = algos.DSASignature({"r": 0x1234, "s": 0x5678}).dump()
    resigned = _resign(certificate, {"algorithm": "sha384_ecdsa"}, der_signature)

    _data, signature, mechanism, _param = verification_parameters(resigned)
    assert mechanism is Mechanism.ECDSA_SHA384
    assert signature == bytes.fromhex("12345678")


def test_rsa_pss_parameters_follow_certificate(certificate: x509.Certificate) -> None:
    resigned = _resign(
        certificate,
        {
            "algorithm": "rsassa_pss",
            "parameters": {
                "hash_algorithm": {"algorithm": "sha256"},
                "mask_gen_algorithm": {
                    "algorithm": "mgf1",
                    "parameters": {"algorithm": "sha256"},
                },
                "salt_length": 32,
            },
        },
        b"\x02" * 256,
    )

    _data, _signature, mechanism, param = verification_parameters(resigned)
    assert mechanism is Mechanism.SHA256_RSA_PKCS_PSS
    assert param == (Mechanism.SHA256, MGF.SHA256, 32)


def test_unsupported_signature_algorithm(certificate: x509.Certificate) -> None:
    resigned = _resign(certificate, {"algorithm": "md5_rsa"}, b"\x00")
    with pytest.raises(ValueError, match="Unsupported"):
        verification_parameters(resigned)


class _FakeKey:
    def __init__(self, valid: bool = True) -> None:
        self.valid = valid
        self.calls: list[dict[str, Any]] = []

    def verify(self, data, signature, **kwargs) -> bool:
        self.calls.append({"data": data, "signature": signature, **kwargs})
        return self.valid


class _FakeSession:
    def __init__(self, keys: dict[tuple[ObjectClass, bytes], Any]) -> None:
        self.keys = keys
        self.queries: list[dict[Attribute, Any]] = []
        self.closed = False

    def get_key(self, object_class, id):
        try:
            return self.keys[(object_class, id)]
        except KeyError:
            raise pkcs11.exceptions.NoSuchKey() from None

    def get_objects(self, attributes):
        self.queries.append(dict(attributes))
        return iter(["match"] if attributes.get(Attribute.LABEL) == "testCert" else [])

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_session(monkeypatch) -> _FakeSession:
    session = _FakeSession({(ObjectClass.PUBLIC_KEY, b"\x00\x00"): _FakeKey()})
    opened: dict[str, Any] = {}

    class _Token:
        def open(self, user_pin):
            opened["pin"] = user_pin
            return session

    class _Lib:
        def __init__(self, path):
            opened["path"] = path

        def get_token(self, token_label):
            opened["label"] = token_label
            return _Token()

    monkeypatch.setattr(inventory_module.pkcs11, "lib", _Lib)
    session.opened = opened
    return session


def test_inventory_opens_user_session(fake_session) -> None:
    with TokenInventory("/usr/lib/softhsm/libsofthsm2.so", "Test", "12345678") as inventory:
        assert inventory.session is fake_session
    assert fake_session.opened == {
        "path": "/usr/lib/softhsm/libsofthsm2.so",
        "label": "Test",
        "pin": "12345678",
    }
    assert fake_session.closed


def test_lookups_return_none_when_absent(fake_session) -> None:
    with TokenInventory("/m.so", "Test", "1") as inventory:
        assert inventory.find_public_key("0000") is not None
        assert inventory.find_private_key("0000") is None
        assert inventory.find_certificate("testCert") == "match"
        assert inventory.find_certificate("ecCert") is None


def test_resolve_builds_attribute_template(fake_session) -> None:
    with TokenInventory("/m.so", "Test", "1") as inventory:
        inventory.resolve("pkcs11:type=private;id=%00%05")
    assert fake_session.queries[-1] == {
        Attribute.CLASS: ObjectClass.PRIVATE_KEY,
        Attribute.ID: b"\x00\x05",
    }


def test_verify_certificate_uses_issuer_public_key(fake_session, certificate) -> None:
    with TokenInventory("/m.so", "Test", "1") as inventory:
        assert inventory.verify_certificate(certificate, "0000") is True

    key = fake_session.keys[(ObjectClass.PUBLIC_KEY, b"\x00\x00")]
    (call,) = key.calls
    assert call["mechanism"] is Mechanism.SHA256_RSA_PKCS
    assert call["data"] == certificate["tbs_certificate"].dump()


def test_verify_certificate_requires_issuer_key(fake_session, certificate) -> None:
    with TokenInventory("/m.so", "Test", "1") as inventory:
        with pytest.raises(ProvisioningError, match="not found"):
            inventory.verify_certificate(certificate, "0009")


def test_session_must_be_open() -> None:
    with pytest.raises(ProvisioningError, match="not open"):
        TokenInventory("/m.so", "Test", "1").session
