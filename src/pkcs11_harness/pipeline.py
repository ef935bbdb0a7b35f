from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Mapping

from .algorithms import get_key_algorithm
from .backends import Backend, get_backend
from .chain import ChainOfTrustBuilder, IssuedCertificate
from .config import HarnessConfig
from .env_export import EnvironmentExporter
from .exceptions import ProvisioningError, UnsupportedFeatureError
from .inventory import TokenInventory
from .provider_conf import OUTPUT_NAME, TEMPLATE_NAME, write_provider_config
from .provisioner import TokenProvisioner, TokenStore
from .results import StepResult
from .tools import ToolLocator, ToolRunner
from .uri import UriRegistry

REDHAT_RELEASE = "/etc/redhat-release"
EXPLICIT_EC_PRIVATE_KEY = "explicit_ec.key.der"
EXPLICIT_EC_PUBLIC_KEY = "explicit_ec.pub.der"

_logger = logging.getLogger("pkcs11_harness.pipeline")


@dataclass(frozen=True)
class ObjectSpec:
    """One provisioned object and the names its URIs are exported under."""

    prefix: str
    suffix: str
    key_id: str
    label: str
    common_name: str | None
    algorithm: str
    orphan: bool = False
    title: str | None = None


LEAF_OBJECTS: tuple[ObjectSpec, ...] = (
    ObjectSpec("", "", "0001", "testCert", "My Test Cert", "rsa2048", title="RSA PKCS11 URIS"),
    ObjectSpec("EC", "", "0002", "ecCert", "My EC Cert", "ec_p256", title="EC PKCS11 URIS"),
    ObjectSpec(
        "ECPEER", "", "0003", "ecPeerCert", "My Peer EC Cert", "ec_p256",
        title="EC peer PKCS11 URIS",
    ),
    ObjectSpec(
        "ED", "", "0004", "edCert", "My ED25519 Cert", "ed25519", title="ED25519 PKCS11 URIS"
    ),
    ObjectSpec(
        "", "2", "0005", "testCert2", "My Test Cert 2", "rsa2048",
        orphan=True, title="RSA2 PKCS11 URIS",
    ),
    ObjectSpec(
        "EC", "2", "0006", "ecCert2", "My EC Cert 2", "ec_p384",
        orphan=True, title="EC2 PKCS11 URIS",
    ),
)

EXPLICIT_EC_OBJECT = ObjectSpec(
    prefix="ECX",
    suffix="",
    key_id="0007",
    label="ecExplicitCert",
    common_name=None,
    algorithm="ec_explicit",
    title="EXPLICIT EC PKCS11 URIS",
)


@dataclass(frozen=True)
class ProvisionedSuite:
    store: TokenStore
    registry: UriRegistry
    certificates: tuple[IssuedCertificate, ...]
    environment: dict[str, str]
    testvars: Path
    unsetvars: Path
    openssl_conf: Path | None
    skipped_features: tuple[str, ...]


InventoryFactory = Callable[[TokenStore], TokenInventory]


def default_inventory(store: TokenStore) -> TokenInventory:
    return TokenInventory(str(store.module_path), store.backend.token_label, store.pin)


def check_supported(
    backend: Backend,
    spec: ObjectSpec,
    exists: Callable[[str], bool] = os.path.exists,
) -> None:
    """Raise UnsupportedFeatureError if ``spec`` cannot be provisioned here."""
    algorithm = get_key_algorithm(spec.algorithm)
    if algorithm.key_type == "EC_EDWARDS" and not backend.supports_edwards:
        raise UnsupportedFeatureError(f"Edwards curves are not supported by {backend.name}")
    if algorithm.explicit_parameters:
        if not backend.supports_explicit_ec:
            raise UnsupportedFeatureError(f"explicit EC is not supported by {backend.name}")
        if exists(REDHAT_RELEASE):
            raise UnsupportedFeatureError("explicit EC is unsupported on Fedora/EL")


@contextmanager
def scoped_environ(values: Mapping[str, str]) -> Iterator[None]:
    """Expose ``values`` in os.environ for the duration of the block only."""
    previous = {name: os.environ.get(name) for name in values}
    os.environ.update(values)
    try:
        yield
    finally:
        for name, value in previous.items():
            if value is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = value


def verify_token(
    inventory: TokenInventory,
    builder: ChainOfTrustBuilder,
    orphaned: set[str],
) -> None:
    ca = builder.ca
    for issued in builder.issued:
        if issued.is_ca:
            continue
        if not inventory.verify_certificate(issued.certificate, ca.key_id):
            raise ProvisioningError(
                f"Certificate {issued.label} does not verify against CA {ca.label}."
            )
        if inventory.find_private_key(issued.key_id) is None:
            raise ProvisioningError(f"Private key id {issued.key_id} is missing.")
        if inventory.find_certificate(issued.label) is None:
            raise ProvisioningError(f"Certificate object {issued.label} is missing.")
        public_key = inventory.find_public_key(issued.key_id)
        if issued.label in orphaned and public_key is not None:
            raise ProvisioningError(f"Public key id {issued.key_id} was not deleted.")
        if issued.label not in orphaned and public_key is None:
            raise ProvisioningError(f"Public key id {issued.key_id} is missing.")


def base_exports(
    config: HarnessConfig, store: TokenStore, openssl_conf: Path | None
) -> dict[str, str | None]:
    values: dict[str, str | None] = {
        "P11LIB": str(store.module_path),
        "P11KITCLIENTPATH": config.p11kit_client_path,
        "PKCS11_PROVIDER_MODULE": str(store.module_path),
        "PKCS11_PROVIDER_DEBUG": f"file:{store.work_dir / 'p11prov-debug.log'}",
        "OPENSSL_CONF": str(openssl_conf) if openssl_conf is not None else None,
    }
    if store.config_env is not None:
        name, value = store.config_env
        values[name] = value
    values.update(
        {
            "TESTSSRCDIR": str(config.tests_src_dir),
            "TESTBLDDIR": str(config.tests_build_dir),
            "TOKDIR": str(store.token_dir),
            "TMPPDIR": str(store.work_dir),
            "PINVALUE": store.pin,
            "PINFILE": str(store.pin_file),
            "SEEDFILE": str(store.seed_file),
            "RAND64FILE": str(store.rand64_file),
        }
    )
    return values


class SuitePipeline:
    """
    Provisions one suite end to end: token, certificate chain, URIs,
    provider config and the exported test variables.
    """

    def __init__(
        self,
        config: HarnessConfig,
        suite: str,
        *,
        locator: ToolLocator | None = None,
        runner: ToolRunner | None = None,
        is_file: Callable[[str], bool] = os.path.isfile,
        exists: Callable[[str], bool] = os.path.exists,
        inventory_factory: InventoryFactory | None = default_inventory,
    ) -> None:
        self._config = config
        self._backend = get_backend(suite)
        self._provisioner = TokenProvisioner(
            config, self._backend, locator=locator, runner=runner, is_file=is_file
        )
        self._exists = exists
        self._inventory_factory = inventory_factory

    def run(self) -> StepResult[ProvisionedSuite]:
        prepared = self._provisioner.prepare()
        if not prepared.is_ok:
            return StepResult(prepared.outcome, None, prepared.detail)
        store = prepared.unwrap()
        try:
            provisioned = self._populate(store)
        except (ProvisioningError, OSError) as exc:
            _logger.error("Provisioning %s failed: %s", self._backend.name, exc)
            return StepResult.failed(str(exc))
        return StepResult.ok(provisioned, f"{self._backend.name} provisioned")

    def _populate(self, store: TokenStore) -> ProvisionedSuite:
        config = self._config
        backend = store.backend
        pkcs11_tool = store.pkcs11_tool()
        builder = ChainOfTrustBuilder(
            pkcs11_tool=pkcs11_tool,
            certtool=store.certtool(),
            work_dir=store.work_dir,
        )
        registry = UriRegistry(pin=store.pin, pin_file=str(store.pin_file))
        skipped: list[str] = []
        orphaned: set[str] = set()
        titles: dict[tuple[str, str], str | None] = {}

        # The CA exports no URIs of its own.
        builder.issue_ca()

        for spec in LEAF_OBJECTS:
            try:
                check_supported(backend, spec, self._exists)
            except UnsupportedFeatureError as exc:
                _logger.info("Skipping %s on %s: %s", spec.label, backend.name, exc)
                skipped.append(f"{spec.label}: {exc}")
                continue
            issued = builder.issue_leaf(
                spec.label, spec.common_name or spec.label, spec.key_id, spec.algorithm
            )
            if spec.orphan:
                builder.orphan(issued)
                orphaned.add(spec.label)
            registry.register(
                key_id=spec.key_id,
                label=spec.label,
                prefix=spec.prefix,
                suffix=spec.suffix,
                public=not spec.orphan,
            )
            titles[(spec.prefix, spec.suffix)] = spec.title

        explicit_registered = False
        try:
            check_supported(backend, EXPLICIT_EC_OBJECT, self._exists)
        except UnsupportedFeatureError as exc:
            _logger.info("Skipping explicit EC key on %s: %s", backend.name, exc)
            skipped.append(f"{EXPLICIT_EC_OBJECT.label}: {exc}")
        else:
            builder.import_explicit_ec(
                label=EXPLICIT_EC_OBJECT.label,
                key_id=EXPLICIT_EC_OBJECT.key_id,
                private_der=config.tests_src_dir / EXPLICIT_EC_PRIVATE_KEY,
                public_der=config.tests_src_dir / EXPLICIT_EC_PUBLIC_KEY,
            )
            registry.register(
                key_id=EXPLICIT_EC_OBJECT.key_id,
                label=EXPLICIT_EC_OBJECT.label,
                prefix=EXPLICIT_EC_OBJECT.prefix,
                suffix=EXPLICIT_EC_OBJECT.suffix,
                cert=False,
            )
            explicit_registered = True

        contents = pkcs11_tool.list_objects()
        _logger.debug("Contents of %s token:\n%s", backend.name, contents.stdout)

        if config.verify_chain and self._inventory_factory is not None:
            scoped = dict([store.config_env]) if store.config_env is not None else {}
            with scoped_environ(scoped):
                with self._inventory_factory(store) as inventory:
                    verify_token(inventory, builder, orphaned)

        openssl_conf = write_provider_config(
            template_path=config.tests_src_dir / TEMPLATE_NAME,
            output_path=store.work_dir / OUTPUT_NAME,
            libs_path=config.libs_path,
            build_dir=str(config.tests_build_dir),
            work_dir=str(store.work_dir),
            shared_ext=config.shared_ext,
            pin_file=str(store.pin_file),
            quirks=backend.quirks,
            init_args=backend.init_args(store.token_dir),
        )

        exporter = EnvironmentExporter()
        exporter.add_block(base_exports(config, store, openssl_conf))
        for entry in registry.entries():
            if entry.prefix == EXPLICIT_EC_OBJECT.prefix:
                continue
            exporter.add_block(entry.env(), title=titles.get((entry.prefix, entry.suffix)))
        if explicit_registered:
            explicit = registry.get(EXPLICIT_EC_OBJECT.prefix, EXPLICIT_EC_OBJECT.suffix)
            if explicit is not None:
                exporter.add_block(explicit.env(), title=EXPLICIT_EC_OBJECT.title)
        testvars, unsetvars = exporter.write(store.work_dir)

        return ProvisionedSuite(
            store=store,
            registry=registry,
            certificates=builder.issued,
            environment=exporter.snapshot(),
            testvars=testvars,
            unsetvars=unsetvars,
            openssl_conf=openssl_conf,
            skipped_features=tuple(skipped),
        )


def provision_suite(config: HarnessConfig, suite: str) -> StepResult[ProvisionedSuite]:
    return SuitePipeline(config, suite).run()
