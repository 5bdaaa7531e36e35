"""
Environment driven settings for the Azure VM integration harness.

You normally want to run this under a separate "Testing" subscription, set
through AZURE_SUBSCRIPTION_ID (ARM_SUBSCRIPTION_ID is accepted as well since
the azurerm Terraform provider reads it).
"""

import os
from dataclasses import dataclass
from pathlib import Path

from harness_errors import ConfigurationError

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_TERRAFORM_DIR = REPO_ROOT / "terraform" / "azure_vm"
DEFAULT_LABEL_PREFIX = "vmtest"


@dataclass(frozen=True)
class HarnessSettings:
    """Settings shared by every scenario in a run"""

    subscription_id: str
    terraform_dir: Path = DEFAULT_TERRAFORM_DIR
    label_prefix: str = DEFAULT_LABEL_PREFIX
    terraform_binary: str = "terraform"
    max_retries: int = 3
    retry_sleep: float = 5.0

    @property
    def terraform_vars(self):
        """Variables passed to every Terraform apply and destroy"""
        return {"labelPrefix": self.label_prefix}


def _int_setting(environ, name, default):
    raw = environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _float_setting(environ, name, default):
    raw = environ.get(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def load_settings(environ=None) -> HarnessSettings:
    """Build HarnessSettings from environment variables"""
    if environ is None:
        environ = os.environ

    subscription_id = environ.get("AZURE_SUBSCRIPTION_ID") or environ.get(
        "ARM_SUBSCRIPTION_ID"
    )
    if not subscription_id:
        raise ConfigurationError(
            "Set AZURE_SUBSCRIPTION_ID to the subscription the tests should run in"
        )

    terraform_dir = Path(environ.get("TERRAFORM_DIR", str(DEFAULT_TERRAFORM_DIR)))
    # Non-editable installs do not ship terraform/, so TERRAFORM_DIR is required there
    if not terraform_dir.is_dir():
        raise ConfigurationError(
            f"Terraform configuration directory {terraform_dir} does not exist; "
            "set TERRAFORM_DIR to the azure_vm configuration"
        )

    max_retries = _int_setting(environ, "TERRAFORM_MAX_RETRIES", 3)
    if max_retries < 0:
        raise ConfigurationError("TERRAFORM_MAX_RETRIES must not be negative")

    return HarnessSettings(
        subscription_id=subscription_id,
        terraform_dir=terraform_dir,
        label_prefix=environ.get("LABEL_PREFIX", DEFAULT_LABEL_PREFIX),
        terraform_binary=environ.get("TERRAFORM_BINARY", "terraform"),
        max_retries=max_retries,
        retry_sleep=_float_setting(environ, "TERRAFORM_RETRY_SLEEP", 5.0),
    )
