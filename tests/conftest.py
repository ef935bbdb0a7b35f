from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest
from asn1crypto import keys, x509

from pkcs11_harness import HarnessConfig
from pkcs11_harness.tools import ToolLocator, ToolRunner
from pkcs11_harness.x509_ops import load_certificate_file

SOFTHSM_MODULE = "/usr/lib/softhsm/libsofthsm2.so"

# Not a real key; certificates below are never signature-checked offline.
_FAKE_MODULUS = int("C3" + "A5" * 127, 16)


def _option(argv: list[str], name: str) -> str | None:
    """Value of ``--name=value`` or ``--name value``."""
    for index, arg in enumerate(argv):
        if arg.startswith(f"{name}="):
            return arg.split("=", 1)[1]
        if arg == name and index + 1 < len(argv):
            return argv[index + 1]
    return None


def parse_certtool_template(text: str) -> dict[str, Any]:
    fields: dict[str, Any] = {"ca": False}
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if "=" not in line:
            fields[line] = True
            continue
        name, value = (part.strip() for part in line.split("=", 1))
        fields[name] = value.strip('"')
    return fields


def build_certificate(
    *,
    common_name: str,
    serial: int,
    is_ca: bool,
    organization: str | None,
    issuer: x509.Name | None = None,
) -> x509.Certificate:
    subject_fields = {"common_name": common_name}
    if organization:
        subject_fields["organization_name"] = organization
    subject = x509.Name.build(subject_fields)
    now = datetime.now(timezone.utc).replace(microsecond=0)
    public_key = keys.RSAPublicKey({"modulus": _FAKE_MODULUS, "public_exponent": 65537})
    tbs = x509.TbsCertificate(
        {
            "version": "v3",
            "serial_number": serial,
            "signature": {"algorithm": "sha256_rsa"},
            "issuer": issuer if issuer is not None else subject,
            "validity": {
                "not_before": x509.Time({"utc_time": now}),
                "not_after": x509.Time({"utc_time": now + timedelta(days=365)}),
            },
            "subject": subject,
            "subject_public_key_info": {
                "algorithm": {"algorithm": "rsa"},
                "public_key": public_key,
            },
            "extensions": [
                {
                    "extn_id": "basic_constraints",
                    "critical": True,
                    "extn_value": {"ca": is_ca},
                }
            ],
        }
    )
    return x509.Certificate(
        {
            "tbs_certificate": tbs,
            "signature_algorithm": {"algorithm": "sha256_rsa"},
            "signature_value": b"\x01" * 256,
        }
    )


@dataclass
class FakeToken:
    """In-memory object store driven by the fake pkcs11-tool."""

    objects: set[tuple[str, str, str]] = field(default_factory=set)

    def find(self, object_type: str, *, key_id: str | None = None, label: str | None = None):
        for entry in sorted(self.objects):
            kind, entry_id, entry_label = entry
            if kind != object_type:
                continue
            if key_id is not None and entry_id != key_id:
                continue
            if label is not None and entry_label != label:
                continue
            return entry
        return None


class FakeTools:
    """
    Stand-in for subprocess.run covering the token tools.

    ``fail`` maps a predicate over argv to a return code; the first match
    wins. The fake certtool writes a DER certificate that reflects the
    template it was handed.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], dict[str, str]]] = []
        self.token = FakeToken()
        self.fail: list[tuple[Callable[[list[str]], bool], int]] = []

    def __call__(self, argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        env = dict(kwargs.get("env") or {})
        self.calls.append((list(argv), env))
        for predicate, returncode in self.fail:
            if predicate(argv):
                return subprocess.CompletedProcess(argv, returncode, "", "simulated failure")

        tool = Path(argv[0]).name
        stdout = ""
        if tool == "pkcs11-tool":
            stdout = self._pkcs11_tool(argv)
        elif tool in ("certtool", "gnutls-certtool"):
            self._certtool(argv)
        return subprocess.CompletedProcess(argv, 0, stdout, "")

    def commands(self, tool: str) -> list[list[str]]:
        return [argv for argv, _env in self.calls if Path(argv[0]).name == tool]

    def _pkcs11_tool(self, argv: list[str]) -> str:
        key_id = _option(argv, "--id")
        label = _option(argv, "--label")
        if "--keypairgen" in argv:
            self.token.objects.add(("privkey", key_id, label))
            self.token.objects.add(("pubkey", key_id, label))
        elif _option(argv, "--write-object") is not None:
            if not Path(_option(argv, "--write-object")).is_file():
                raise FileNotFoundError(_option(argv, "--write-object"))
            self.token.objects.add((_option(argv, "--type"), key_id, label))
        elif "--delete-object" in argv:
            object_type = _option(argv, "--type")
            self.token.objects = {
                entry
                for entry in self.token.objects
                if not (entry[0] == object_type and entry[1] == key_id)
            }
        elif "--list-objects" in argv:
            return "\n".join(
                f"{kind} id={oid} label={lbl}" for kind, oid, lbl in sorted(self.token.objects)
            )
        return ""

    def _certtool(self, argv: list[str]) -> None:
        template = parse_certtool_template(Path(_option(argv, "--template")).read_text())
        issuer_name = None
        ca_path = _option(argv, "--load-ca-certificate")
        if ca_path is not None:
            issuer_name = load_certificate_file(Path(ca_path))["tbs_certificate"]["subject"]
        certificate = build_certificate(
            common_name=template["cn"],
            serial=int(template["serial"]),
            is_ca=bool(template["ca"]),
            organization=template.get("organization"),
            issuer=issuer_name,
        )
        Path(_option(argv, "--outfile")).write_bytes(certificate.dump())


class FakeInventory:
    """TokenInventory look-alike answering from a FakeToken."""

    def __init__(self, token: FakeToken) -> None:
        self._token = token
        self.opened = False
        self.verified: list[int] = []

    def __enter__(self) -> "FakeInventory":
        self.opened = True
        return self

    def __exit__(self, *exc: Any) -> None:
        self.opened = False

    def find_private_key(self, key_id: str):
        return self._token.find("privkey", key_id=key_id)

    def find_public_key(self, key_id: str):
        return self._token.find("pubkey", key_id=key_id)

    def find_certificate(self, label: str):
        return self._token.find("cert", label=label)

    def verify_certificate(self, certificate: x509.Certificate, issuer_key_id: str) -> bool:
        issuer = self._token.find("cert", key_id=issuer_key_id)
        if issuer is None or self.find_public_key(issuer_key_id) is None:
            return False
        self.verified.append(certificate.serial_number)
        return certificate.issuer.native.get("common_name") == "Issuer"


@pytest.fixture
def fake_tools() -> FakeTools:
    return FakeTools()


@pytest.fixture
def tool_runner(fake_tools: FakeTools) -> ToolRunner:
    return ToolRunner(env={"PATH": "/usr/bin"}, runner=fake_tools)


@pytest.fixture
def all_tools_locator() -> ToolLocator:
    return ToolLocator(which=lambda name: f"/usr/bin/{name}", system="Linux")


@pytest.fixture
def harness_config(tmp_path: Path) -> HarnessConfig:
    src_dir = tmp_path / "src"
    build_dir = tmp_path / "build"
    src_dir.mkdir()
    build_dir.mkdir()
    return HarnessConfig(tests_src_dir=src_dir, tests_build_dir=build_dir, jobs=2)

