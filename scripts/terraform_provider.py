#!/usr/bin/env python3
"""
Terraform driver used by the integration harness.

Runs `terraform init`/`apply`/`output`/`destroy` as subprocesses against a
configuration directory. Apply and destroy are retried when Terraform fails
with one of the known transient errors below, so callers get at-least-once
semantics; any other failure raises ProvisioningError.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from harness_errors import ProvisioningError

logger = logging.getLogger(__name__)

# Transient failures worth another attempt, mapped to a short description
RETRYABLE_TERRAFORM_ERRORS = {
    r".*read: connection reset by peer.*": "Connection reset by peer",
    r".*TLS handshake timeout.*": "TLS handshake timeout",
    r".*Failed to load state.*tcp.*timeout.*": "Timed out loading state",
    r".*Error installing provider.*tcp.*timeout.*": "Timed out installing provider",
    r".*Error installing provider.*tcp.*connection reset by peer.*": (
        "Connection reset while installing provider"
    ),
    r".*Failed to query available provider packages.*": (
        "Provider registry unavailable"
    ),
    r".*Client\.Timeout exceeded while awaiting headers.*": "HTTP client timeout",
    r".*Could not download module.*The requested URL returned error: 429.*": (
        "Module registry rate limited"
    ),
    r".*RetryableError.*": "Azure returned a retryable error",
    r".*(StatusCode=429|TooManyRequests).*": "Azure API throttling",
}

# Left behind by previous runs; never copied into an isolated workspace
_STATE_PATTERNS = (
    ".terraform",
    "*.tfstate",
    "*.tfstate.*",
    ".terraform.tfstate.lock.info",
)


@dataclass(frozen=True)
class ProvisioningConfig:
    """A Terraform directory plus the variables and environment to apply it with"""

    source_dir: Path
    variables: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "source_dir", Path(self.source_dir))
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def isolated(self, workspace, label_suffix: str = "sc") -> "ProvisioningConfig":
        """Copy the configuration into workspace with its own state and labelPrefix"""
        target = Path(workspace) / self.source_dir.name
        shutil.copytree(
            self.source_dir, target, ignore=shutil.ignore_patterns(*_STATE_PATTERNS)
        )
        variables = dict(self.variables)
        if "labelPrefix" in variables:
            variables["labelPrefix"] = f"{variables['labelPrefix']}{label_suffix}"
        return replace(self, source_dir=target, variables=variables)


@dataclass(frozen=True)
class ProvisioningHandle:
    """Reference to an applied configuration, needed for output and destroy"""

    config: ProvisioningConfig


def format_var(value) -> str:
    """Render a Python value as a Terraform -var value"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value)
    return str(value)


def var_args(variables: Mapping[str, Any]) -> list:
    args = []
    for name, value in variables.items():
        args.extend(["-var", f"{name}={format_var(value)}"])
    return args


def retryable_reason(output: str) -> Optional[str]:
    """Return a description if output matches a known transient error"""
    for pattern, description in RETRYABLE_TERRAFORM_ERRORS.items():
        if re.search(pattern, output):
            return description
    return None


class TerraformProvider:
    """Apply, query and destroy Terraform configurations"""

    def __init__(
        self,
        binary: str = "terraform",
        max_retries: int = 3,
        retry_sleep: float = 5.0,
        runner=None,
        sleep=None,
    ):
        self.binary = binary
        self.max_retries = max_retries
        self.retry_sleep = retry_sleep
        self._runner = runner or subprocess.run
        self._sleep = sleep or time.sleep

    def _environment(self, config: ProvisioningConfig) -> dict:
        env = os.environ.copy()
        env.setdefault("TF_IN_AUTOMATION", "1")
        env.update(config.env)
        return env

    def _run(
        self, config: ProvisioningConfig, *args: str, retry: bool = True
    ) -> subprocess.CompletedProcess:
        command = [self.binary, *args]
        attempts = self.max_retries + 1 if retry else 1
        env = self._environment(config)

        for attempt in range(1, attempts + 1):
            logger.info("Running %s in %s", " ".join(command), config.source_dir)
            result = self._runner(
                command,
                cwd=config.source_dir,
                check=False,
                capture_output=True,
                text=True,
                env=env,
            )
            if result.stdout:
                logger.info("%s", result.stdout.rstrip())

            if result.returncode == 0:
                return result

            stderr = result.stderr or ""
            reason = retryable_reason(f"{result.stdout or ''}\n{stderr}")
            if reason is None or attempt == attempts:
                raise ProvisioningError(command, result.returncode, stderr)

            logger.warning(
                "%s failed (%s), retrying in %ss [attempt %d/%d]",
                " ".join(command[:2]),
                reason,
                self.retry_sleep,
                attempt,
                attempts,
            )
            self._sleep(self.retry_sleep)

        raise AssertionError("unreachable")  # pragma: no cover

    def apply(self, config: ProvisioningConfig) -> ProvisioningHandle:
        """Run `terraform init` and `terraform apply` for config"""
        self._run(config, "init", "-input=false", "-no-color")
        self._run(
            config,
            "apply",
            "-input=false",
            "-auto-approve",
            "-no-color",
            *var_args(config.variables),
        )
        return ProvisioningHandle(config)

    def output(self, handle: ProvisioningHandle, name: str) -> str:
        """Return a single output of an applied configuration as a string"""
        result = self._run(
            handle.config, "output", "-no-color", "-json", name, retry=False
        )
        try:
            value = json.loads(result.stdout)
        except json.JSONDecodeError:
            raise ProvisioningError(
                [self.binary, "output", name],
                result.returncode,
                f"output {name!r} is not valid JSON: {result.stdout!r}",
            ) from None
        if isinstance(value, str):
            return value
        return json.dumps(value)

    def destroy(self, handle: ProvisioningHandle) -> None:
        """Run `terraform destroy` for an applied configuration"""
        config = handle.config
        self._run(
            config,
            "destroy",
            "-input=false",
            "-auto-approve",
            "-no-color",
            *var_args(config.variables),
        )
