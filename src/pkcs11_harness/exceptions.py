class HarnessError(RuntimeError):
    """Base harness error."""


class HarnessConfigurationError(HarnessError):
    """Configuration is invalid or incomplete."""


class MissingToolError(HarnessError):
    """An optional external tool or backend module is not installed."""


class ProvisioningError(HarnessError):
    """A provisioning step failed."""


class UnsupportedFeatureError(HarnessError):
    """A capability is not available on this platform or backend."""
