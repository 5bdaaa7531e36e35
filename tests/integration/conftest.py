"""
Pytest configuration and fixtures for integration tests
"""

import functools
import json
import os
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

# Add scripts directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "scripts"))

import azure_vm_scenarios  # noqa: E402
from azure_inspector import AzureInspector, expected_nic_id  # noqa: E402
from terraform_provider import TerraformProvider  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"


class FakeTerraform:
    """Stands in for subprocess.run, tracking applied state per directory"""

    def __init__(self):
        self.calls = []
        self.applied = {}
        self.fail_apply_in = set()

    def __call__(self, command, cwd=None, **kwargs):
        command = list(command)
        cwd = Path(cwd)
        self.calls.append((command, cwd))
        action = command[1]

        if action == "apply":
            if cwd in self.fail_apply_in:
                return subprocess.CompletedProcess(
                    command, 1, "", "Error: creating Linux Virtual Machine: quota exceeded"
                )
            label = next(
                arg.split("=", 1)[1] for arg in command if arg.startswith("labelPrefix=")
            )
            self.applied[cwd] = label
            return subprocess.CompletedProcess(command, 0, "Apply complete!", "")

        if action == "output":
            label = self.applied[cwd]
            values = {
                "vm_name": f"{label}-A05-VM",
                "resource_group_name": f"{label}-A05-RG",
                "nic_name": f"{label}-A05-NIC",
            }
            return subprocess.CompletedProcess(
                command, 0, json.dumps(values[command[-1]]), ""
            )

        if action == "destroy":
            self.applied.pop(cwd, None)

        return subprocess.CompletedProcess(command, 0, "", "")

    def directories(self, action):
        return [cwd for command, cwd in self.calls if command[1] == action]


@pytest.fixture
def fake_terraform():
    return FakeTerraform()


@pytest.fixture
def vm_image():
    """Image reference reported for every VM; tests may change fields"""
    return {
        "publisher": "Canonical",
        "offer": "0001-com-ubuntu-server-jammy",
        "sku": "22_04-lts-gen2",
        "version": "latest",
    }


@pytest.fixture
def mock_compute_client(vm_image):
    """Mock ComputeManagementClient returning VMs wired to their NIC"""
    client = MagicMock()

    def get_vm(resource_group, name):
        nic_name = name.replace("-VM", "-NIC")
        return SimpleNamespace(
            name=name,
            network_profile=SimpleNamespace(
                network_interfaces=[
                    SimpleNamespace(
                        id=expected_nic_id(SUBSCRIPTION_ID, resource_group, nic_name)
                    )
                ]
            ),
            storage_profile=SimpleNamespace(
                image_reference=SimpleNamespace(**vm_image)
            ),
        )

    client.virtual_machines.get.side_effect = get_vm
    return client


@pytest.fixture
def mock_network_client():
    return MagicMock()


@pytest.fixture
def terraform_dir(tmp_path):
    """Minimal Terraform directory for the fake runner"""
    source = tmp_path / "terraform" / "azure_vm"
    source.mkdir(parents=True)
    (source / "main.tf").write_text("# applied by FakeTerraform\n")
    return source


@pytest.fixture
def harness_env(monkeypatch, tmp_path, terraform_dir):
    """Environment for a runner invocation, with the log written to tmp_path"""
    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", SUBSCRIPTION_ID)
    monkeypatch.setenv("TERRAFORM_DIR", str(terraform_dir))
    monkeypatch.setenv("TERRAFORM_RETRY_SLEEP", "0")
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def fake_cloud(monkeypatch, fake_terraform, mock_compute_client, mock_network_client):
    """Route the runner's provider and inspector to the fakes"""
    monkeypatch.setattr(
        azure_vm_scenarios,
        "TerraformProvider",
        functools.partial(TerraformProvider, runner=fake_terraform, sleep=lambda s: None),
    )
    monkeypatch.setattr(
        azure_vm_scenarios,
        "AzureInspector",
        functools.partial(
            AzureInspector,
            credential=object(),
            compute_client_factory=lambda credential, sub: mock_compute_client,
            network_client_factory=lambda credential, sub: mock_network_client,
        ),
    )
    return fake_terraform
