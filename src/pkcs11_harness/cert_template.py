from __future__ import annotations

from dataclasses import dataclass

CA_SERIAL = 1
DEFAULT_ORGANIZATION = "PKCS11 Provider"


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass(frozen=True)
class CertTemplate:
    """Certificate fields shared by every issuance in a run."""

    expiration_days: int = 365
    email: str = "testcert@example.org"
    signing_key: bool = True
    encryption_key: bool = True
    organization: str = DEFAULT_ORGANIZATION

    def __post_init__(self) -> None:
        if self.expiration_days <= 0:
            raise ValueError("expiration_days must be > 0.")


@dataclass(frozen=True)
class IssuanceOverlay:
    """Per-certificate fields layered over a CertTemplate."""

    common_name: str
    serial: int
    is_ca: bool = False

    def __post_init__(self) -> None:
        if not self.common_name.strip():
            raise ValueError("common_name is required.")
        if self.serial < 1:
            raise ValueError("serial must be >= 1.")


@dataclass(frozen=True)
class ComposedTemplate:
    common_name: str
    serial: int
    is_ca: bool
    organization: str | None
    expiration_days: int
    email: str
    signing_key: bool
    encryption_key: bool

    def render(self) -> str:
        """Render in the GnuTLS certtool template syntax."""
        lines: list[str] = []
        if self.is_ca:
            lines.append("ca")
        lines.append(f"cn = {_quote(self.common_name)}")
        lines.append(f"serial = {self.serial}")
        lines.append(f"expiration_days = {self.expiration_days}")
        lines.append(f"email = {_quote(self.email)}")
        if self.signing_key:
            lines.append("signing_key")
        if self.encryption_key:
            lines.append("encryption_key")
        if self.organization:
            lines.append(f"organization = {_quote(self.organization)}")
        return "\n".join(lines) + "\n"


def compose(template: CertTemplate, overlay: IssuanceOverlay) -> ComposedTemplate:
    """
    Combine the shared template with one issuance.

    The CA carries the ``ca`` marker and no organization; leaves carry the
    organization and never the marker.
    """
    return ComposedTemplate(
        common_name=overlay.common_name.strip(),
        serial=overlay.serial,
        is_ca=overlay.is_ca,
        organization=None if overlay.is_ca else template.organization,
        expiration_days=template.expiration_days,
        email=template.email,
        signing_key=template.signing_key,
        encryption_key=template.encryption_key,
    )
