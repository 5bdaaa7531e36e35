#!/usr/bin/env python3
"""
One-time shared provisioning for the integration scenarios.

The first scenario to call ensure_provisioned() applies the Terraform
configuration; every other caller waits for that apply and then sees the same
outputs, or the same failure. A failed apply is never retried because the
resources may be partially created. teardown() destroys the shared resources
once, and only if the apply completed.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional

from harness_errors import SetupFailure, TeardownFailure

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_NAMES = ("vm_name", "resource_group_name", "nic_name")


class SetupStatus(enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SetupState:
    status: SetupStatus
    outputs: Optional[Mapping[str, str]] = None
    error: Optional[BaseException] = None


class SetupCoordinator:
    """Apply a configuration at most once and share its outputs"""

    def __init__(self, provider, config, output_names=DEFAULT_OUTPUT_NAMES):
        self.provider = provider
        self.config = config
        self.output_names = tuple(output_names)
        self._lock = threading.Lock()
        self._state = SetupState(SetupStatus.NOT_STARTED)
        self._handle: Any = None
        self._torn_down = False
        self.teardown_error: Optional[TeardownFailure] = None

    @property
    def state(self) -> SetupState:
        return self._state

    def ensure_provisioned(self) -> Mapping[str, str]:
        """Return the shared outputs, applying the configuration on first use"""
        state = self._state
        if state.status is SetupStatus.COMPLETED:
            return state.outputs

        with self._lock:
            if self._state.status is SetupStatus.NOT_STARTED:
                self._provision()
            state = self._state

        if state.status is SetupStatus.FAILED:
            raise SetupFailure(f"Terraform setup failed: {state.error!r}") from state.error
        return state.outputs

    def _provision(self):
        # Called with the lock held
        self._state = SetupState(SetupStatus.IN_PROGRESS)
        logger.info("Provisioning shared resources from %s", self.config.source_dir)
        try:
            handle = self.provider.apply(self.config)
            outputs = {
                name: self.provider.output(handle, name) for name in self.output_names
            }
        except BaseException as e:
            logger.error("Shared provisioning failed: %s", e)
            self._state = SetupState(SetupStatus.FAILED, error=e)
            if not isinstance(e, Exception):
                raise
            return

        self._handle = handle
        self._state = SetupState(
            SetupStatus.COMPLETED, outputs=MappingProxyType(outputs)
        )
        logger.info("Shared provisioning completed: %s", outputs)

    def teardown(self) -> bool:
        """Destroy the shared resources if they were created.

        Runs destroy at most once. Returns False if destroy failed; the
        failure is logged and not retried.
        """
        with self._lock:
            if self._torn_down or self._state.status is not SetupStatus.COMPLETED:
                return True
            self._torn_down = True
            handle = self._handle

        logger.info("Destroying shared resources in %s", self.config.source_dir)
        try:
            self.provider.destroy(handle)
        except Exception as e:
            self.teardown_error = TeardownFailure(f"Terraform destroy failed: {e}")
            logger.exception("%s", self.teardown_error)
            return False
        logger.info("Shared resources destroyed")
        return True
