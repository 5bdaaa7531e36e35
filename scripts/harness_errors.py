"""
Error types raised by the Azure VM integration harness
"""


class HarnessError(Exception):
    """Base class for harness errors"""


class ConfigurationError(HarnessError):
    """Required configuration is missing or malformed"""


class ProvisioningError(HarnessError):
    """A Terraform command exited non-zero"""

    def __init__(self, command, returncode, stderr=""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"{' '.join(self.command)} exited with {returncode}: {stderr.strip()}"
        )


class SetupFailure(HarnessError):
    """Shared provisioning did not complete; dependent scenarios cannot run"""


class InspectionFailure(HarnessError):
    """A cloud query failed or returned an unexpected shape"""


class TeardownFailure(HarnessError):
    """Destroying provisioned resources failed"""
