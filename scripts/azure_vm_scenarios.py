#!/usr/bin/env python3
"""
Verification scenarios for the Azure Linux VM defined in terraform/azure_vm.

Each scenario receives the HarnessContext built once by run_azure_vm_tests.py.
TestAzureLinuxVMCreation provisions and destroys its own isolated copy of the
configuration; the other scenarios share the resources applied by the
context's SetupCoordinator.
"""

import shutil
import tempfile
import unittest
from dataclasses import dataclass

from azure_inspector import (
    AzureInspector,
    ImageReference,
    expected_nic_id,
    image_mismatches,
    nic_attached,
)
from harness_config import HarnessSettings
from setup_coordinator import SetupCoordinator
from terraform_provider import ProvisioningConfig, ProvisioningHandle, TerraformProvider

# Matches the source_image_reference in terraform/azure_vm/main.tf
EXPECTED_IMAGE = ImageReference(
    publisher="Canonical",
    offer="0001-com-ubuntu-server-jammy",
    sku="22_04-lts-gen2",
)


@dataclass
class HarnessContext:
    """Everything the scenarios share for one test run"""

    settings: HarnessSettings
    provider: TerraformProvider
    inspector: AzureInspector
    coordinator: SetupCoordinator

    @property
    def subscription_id(self) -> str:
        return self.settings.subscription_id


def provisioning_config(settings: HarnessSettings) -> ProvisioningConfig:
    return ProvisioningConfig(
        source_dir=settings.terraform_dir,
        variables=settings.terraform_vars,
        env={"ARM_SUBSCRIPTION_ID": settings.subscription_id},
    )


def build_context(settings: HarnessSettings, provider=None, inspector=None):
    """Wire up the provider, inspector and shared coordinator for a run"""
    if provider is None:
        provider = TerraformProvider(
            binary=settings.terraform_binary,
            max_retries=settings.max_retries,
            retry_sleep=settings.retry_sleep,
        )
    if inspector is None:
        inspector = AzureInspector()
    coordinator = SetupCoordinator(provider, provisioning_config(settings))
    return HarnessContext(settings, provider, inspector, coordinator)


class ScenarioTestCase(unittest.TestCase):
    """TestCase that carries the run's HarnessContext"""

    def __init__(self, methodName="runTest", context=None):
        super().__init__(methodName)
        self.context = context

    def setUp(self):
        if self.context is None:
            self.skipTest("Scenarios run through run_azure_vm_tests.py")


class TestAzureLinuxVMCreation(ScenarioTestCase):
    """Provision a private copy of the VM and confirm it exists"""

    def test_vm_exists(self):
        workspace = tempfile.mkdtemp(prefix="azure-vm-scoped-")
        self.addCleanup(shutil.rmtree, workspace, ignore_errors=True)

        provider = self.context.provider
        config = provisioning_config(self.context.settings).isolated(workspace)

        # Registered before apply so partially created resources are removed too
        self.addCleanup(provider.destroy, ProvisioningHandle(config))
        handle = provider.apply(config)

        vm_name = provider.output(handle, "vm_name")
        resource_group = provider.output(handle, "resource_group_name")

        self.assertTrue(
            self.context.inspector.virtual_machine_exists(
                vm_name, resource_group, self.context.subscription_id
            ),
            f"VM {vm_name} does not exist in {resource_group}",
        )


class TestNICExistsAndConnected(ScenarioTestCase):
    def test_nic_exists_and_connected(self):
        outputs = self.context.coordinator.ensure_provisioned()
        subscription_id = self.context.subscription_id
        resource_group = outputs["resource_group_name"]
        nic_name = outputs["nic_name"]
        inspector = self.context.inspector

        self.assertTrue(
            inspector.network_interface_exists(
                nic_name, resource_group, subscription_id
            ),
            "NIC does not exist",
        )

        vm = inspector.get_virtual_machine(
            outputs["vm_name"], resource_group, subscription_id
        )
        self.assertTrue(
            nic_attached(vm, subscription_id, resource_group, nic_name),
            f"NIC is not attached to VM: "
            f"{expected_nic_id(subscription_id, resource_group, nic_name)} "
            f"not in {list(vm.network_interface_ids)}",
        )


class TestUbuntuVersion(ScenarioTestCase):
    def test_ubuntu_version(self):
        outputs = self.context.coordinator.ensure_provisioned()
        vm = self.context.inspector.get_virtual_machine(
            outputs["vm_name"],
            outputs["resource_group_name"],
            self.context.subscription_id,
        )

        mismatches = image_mismatches(vm.image_reference, EXPECTED_IMAGE)
        if mismatches:
            self.fail(
                "; ".join(
                    f"VM image {field} is {actual!r}, expected {expected!r}"
                    for field, expected, actual in mismatches
                )
            )


SCENARIOS = (TestAzureLinuxVMCreation, TestNICExistsAndConnected, TestUbuntuVersion)


def build_suite(context, scenarios=SCENARIOS) -> unittest.TestSuite:
    """Instantiate every scenario test with the shared context"""
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for case in scenarios:
        for name in loader.getTestCaseNames(case):
            suite.addTest(case(name, context=context))
    return suite
