from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from urllib.parse import quote, unquote_to_bytes

URI_SCHEME = "pkcs11:"
KEY_ID_WIDTH = 2

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_LABEL_SAFE = "-._~"

_logger = logging.getLogger("pkcs11_harness.uri")


class ObjectType(str, enum.Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    CERT = "cert"


class PinMode(enum.Enum):
    VALUE = "value"
    SOURCE = "source"
    NONE = "none"


def normalize_key_id(key_id: str | bytes | int, width: int = KEY_ID_WIDTH) -> bytes:
    """
    Return the raw id bytes for a key id given as hex text, bytes or int.

    Hex text and ints are zero-padded to ``width`` bytes so every generated
    object has an id of the same length.
    """
    if isinstance(key_id, bytes):
        if not key_id:
            raise ValueError("key_id must not be empty.")
        return key_id
    if isinstance(key_id, int):
        if key_id < 0:
            raise ValueError("key_id must be >= 0.")
        return key_id.to_bytes(max(width, (key_id.bit_length() + 7) // 8), "big")

    text = key_id.strip()
    if not text or not _HEX_RE.match(text):
        raise ValueError(f"key_id must be hex digits, got: {key_id!r}")
    if len(text) % 2:
        text = "0" + text
    text = text.rjust(width * 2, "0")
    return bytes.fromhex(text)


def key_id_hex(key_id: str | bytes | int) -> str:
    """Hex form used on tool command lines, e.g. ``0001``."""
    return normalize_key_id(key_id).hex().upper()


def encode_id(key_id: str | bytes | int) -> str:
    return "".join(f"%{byte:02X}" for byte in normalize_key_id(key_id))


def decode_id(encoded: str) -> bytes:
    return unquote_to_bytes(encoded)


def _encode_label(label: str) -> str:
    return quote(label, safe=_LABEL_SAFE)


def pin_source_value(pin_file: str) -> str:
    if pin_file.startswith("file:"):
        return pin_file
    return f"file:{pin_file}"


@dataclass(frozen=True)
class Pkcs11Uri:
    """
    Parsed PKCS#11 URI restricted to the attributes the harness emits.

    ``object_type`` None is the ambiguous base form which matches every
    object class carrying the id.
    """

    object_type: ObjectType | None = None
    key_id: bytes | None = None
    label: str | None = None
    pin_value: str | None = None
    pin_source: str | None = None

    def __str__(self) -> str:
        path: list[str] = []
        if self.object_type is not None:
            path.append(f"type={self.object_type.value}")
        if self.key_id is not None:
            path.append(f"id={encode_id(self.key_id)}")
        if self.label is not None:
            path.append(f"object={_encode_label(self.label)}")
        query: list[str] = []
        if self.pin_value is not None:
            query.append(f"pin-value={self.pin_value}")
        if self.pin_source is not None:
            query.append(f"pin-source={pin_source_value(self.pin_source)}")
        text = URI_SCHEME + ";".join(path)
        if query:
            text += "?" + "&".join(query)
        return text

    @classmethod
    def parse(cls, text: str) -> "Pkcs11Uri":
        if not text.startswith(URI_SCHEME):
            raise ValueError(f"Not a PKCS#11 URI: {text!r}")
        body = text[len(URI_SCHEME):]
        path_part, _sep, query_part = body.partition("?")

        object_type: ObjectType | None = None
        key_id: bytes | None = None
        label: str | None = None
        for attribute in filter(None, path_part.split(";")):
            name, sep, value = attribute.partition("=")
            if not sep:
                raise ValueError(f"Malformed URI attribute {attribute!r} in {text!r}")
            if name == "type":
                try:
                    object_type = ObjectType(value)
                except ValueError as exc:
                    raise ValueError(f"Unsupported object type {value!r} in {text!r}") from exc
            elif name == "id":
                key_id = decode_id(value)
            elif name == "object":
                label = decode_id(value).decode("utf-8")
            else:
                _logger.debug("Ignoring URI path attribute %s in %s", name, text)

        pin_value: str | None = None
        pin_source: str | None = None
        for attribute in filter(None, query_part.split("&")):
            name, _sep, value = attribute.partition("=")
            if name == "pin-value":
                pin_value = value
            elif name == "pin-source":
                pin_source = value
            else:
                _logger.debug("Ignoring URI query attribute %s in %s", name, text)

        return cls(
            object_type=object_type,
            key_id=key_id,
            label=label,
            pin_value=pin_value,
            pin_source=pin_source,
        )


def make_uri(
    object_type: ObjectType | str | None,
    key_id: str | bytes | int | None = None,
    label: str | None = None,
    pin_mode: PinMode = PinMode.NONE,
    *,
    pin: str | None = None,
    pin_file: str | None = None,
) -> str:
    """
    Build a PKCS#11 URI.

    Key halves and the base form are addressed by id. Certificates are
    addressed by label because labels are unique per object class.
    """
    resolved_type = ObjectType(object_type) if object_type is not None else None

    resolved_id: bytes | None = None
    resolved_label: str | None = None
    if resolved_type is ObjectType.CERT:
        if not label:
            raise ValueError("Certificate URIs require a label.")
        resolved_label = label
    elif key_id is not None:
        resolved_id = normalize_key_id(key_id)
    elif label:
        resolved_label = label
    else:
        raise ValueError("Either key_id or label is required.")

    pin_value: str | None = None
    pin_source: str | None = None
    if pin_mode is PinMode.VALUE:
        if pin is None:
            raise ValueError("pin is required for PinMode.VALUE.")
        pin_value = pin
    elif pin_mode is PinMode.SOURCE:
        if not pin_file:
            raise ValueError("pin_file is required for PinMode.SOURCE.")
        pin_source = pin_file

    return str(
        Pkcs11Uri(
            object_type=resolved_type,
            key_id=resolved_id,
            label=resolved_label,
            pin_value=pin_value,
            pin_source=pin_source,
        )
    )


@dataclass(frozen=True)
class ObjectUris:
    """All URIs exported for one provisioned object."""

    prefix: str
    suffix: str
    key_id: bytes
    label: str
    base: str
    base_with_pin_value: str
    base_with_pin_source: str
    private: str
    public: str | None = None
    cert: str | None = None

    def env(self) -> dict[str, str]:
        p, s = self.prefix, self.suffix
        values: dict[str, str] = {
            f"{p}BASE{s}URIWITHPINVALUE": self.base_with_pin_value,
            f"{p}BASE{s}URIWITHPINSOURCE": self.base_with_pin_source,
            f"{p}BASE{s}URI": self.base,
        }
        if self.public is not None:
            values[f"{p}PUB{s}URI"] = self.public
        values[f"{p}PRI{s}URI"] = self.private
        if self.cert is not None:
            values[f"{p}CRT{s}URI"] = self.cert
        return values


class UriRegistry:
    """Collects the URIs of every provisioned object, in registration order."""

    def __init__(self, *, pin: str, pin_file: str) -> None:
        self._pin = pin
        self._pin_file = pin_file
        self._entries: dict[tuple[str, str], ObjectUris] = {}

    def register(
        self,
        *,
        key_id: str | bytes | int,
        label: str,
        prefix: str = "",
        suffix: str = "",
        public: bool = True,
        cert: bool = True,
    ) -> ObjectUris:
        key = (prefix, suffix)
        if key in self._entries:
            raise ValueError(
                f"URIs for prefix={prefix!r} suffix={suffix!r} are already registered."
            )
        raw_id = normalize_key_id(key_id)
        entry = ObjectUris(
            prefix=prefix,
            suffix=suffix,
            key_id=raw_id,
            label=label,
            base=make_uri(None, raw_id),
            base_with_pin_value=make_uri(None, raw_id, pin_mode=PinMode.VALUE, pin=self._pin),
            base_with_pin_source=make_uri(
                None, raw_id, pin_mode=PinMode.SOURCE, pin_file=self._pin_file
            ),
            private=make_uri(ObjectType.PRIVATE, raw_id),
            public=make_uri(ObjectType.PUBLIC, raw_id) if public else None,
            cert=make_uri(ObjectType.CERT, label=label) if cert else None,
        )
        self._entries[key] = entry
        _logger.debug(
            "Registered URIs prefix=%s suffix=%s id=%s label=%s",
            prefix,
            suffix,
            entry.base,
            label,
        )
        return entry

    def get(self, prefix: str = "", suffix: str = "") -> ObjectUris | None:
        return self._entries.get((prefix, suffix))

    def entries(self) -> tuple[ObjectUris, ...]:
        return tuple(self._entries.values())

    def as_env(self) -> dict[str, str]:
        values: dict[str, str] = {}
        for entry in self._entries.values():
            values.update(entry.env())
        return values
