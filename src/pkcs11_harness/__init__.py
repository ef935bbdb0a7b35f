"""Provisioning and test-matrix harness for PKCS#11 provider conformance tests."""

from .algorithms import KEY_ALGORITHMS, KeyAlgorithm, get_key_algorithm, list_key_algorithms
from .backends import BACKENDS, SUITE_NAMES, Backend, get_backend
from .cert_template import CertTemplate, IssuanceOverlay, compose
from .chain import ChainOfTrustBuilder, ImportedKey, IssuedCertificate
from .config import HarnessConfig
from .env_export import EnvironmentExporter, load_testvars
from .exceptions import (
    HarnessConfigurationError,
    HarnessError,
    MissingToolError,
    ProvisioningError,
    UnsupportedFeatureError,
)
from .inventory import TokenInventory
from .logging_utils import configure_logging
from .matrix import TEST_MATRIX, Invocation, MatrixEntry, expand_matrix
from .pipeline import ProvisionedSuite, SuitePipeline, provision_suite
from .provisioner import TokenProvisioner, TokenStore
from .resolver import first_existing
from .results import Outcome, StepResult
from .runner import InvocationResult, MatrixReport, MatrixRunner, SubprocessProvisioner
from .sanitizer import ExecutionSetup, build_setup
from .uri import ObjectType, PinMode, Pkcs11Uri, UriRegistry, make_uri

__all__ = [
    "BACKENDS",
    "KEY_ALGORITHMS",
    "SUITE_NAMES",
    "TEST_MATRIX",
    "Backend",
    "CertTemplate",
    "ChainOfTrustBuilder",
    "EnvironmentExporter",
    "ExecutionSetup",
    "HarnessConfig",
    "HarnessConfigurationError",
    "HarnessError",
    "ImportedKey",
    "Invocation",
    "InvocationResult",
    "IssuanceOverlay",
    "IssuedCertificate",
    "KeyAlgorithm",
    "MatrixEntry",
    "MatrixReport",
    "MatrixRunner",
    "MissingToolError",
    "ObjectType",
    "Outcome",
    "PinMode",
    "Pkcs11Uri",
    "ProvisionedSuite",
    "ProvisioningError",
    "StepResult",
    "SubprocessProvisioner",
    "SuitePipeline",
    "TokenInventory",
    "TokenProvisioner",
    "TokenStore",
    "UnsupportedFeatureError",
    "UriRegistry",
    "build_setup",
    "compose",
    "configure_logging",
    "expand_matrix",
    "first_existing",
    "get_backend",
    "get_key_algorithm",
    "list_key_algorithms",
    "load_testvars",
    "make_uri",
    "provision_suite",
]
