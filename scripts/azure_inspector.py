#!/usr/bin/env python3
"""
Read-only queries against live Azure state for the integration scenarios.

Existence checks return False when Azure reports the resource as missing.
Every other SDK error, and a VM payload without the fields the scenarios
assert on, raises InspectionFailure.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient

from harness_errors import InspectionFailure

logger = logging.getLogger(__name__)

NIC_ID_FORMAT = (
    "/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
    "/providers/Microsoft.Network/networkInterfaces/{nic_name}"
)

IMAGE_FIELDS = ("publisher", "offer", "sku")


@dataclass(frozen=True)
class ImageReference:
    publisher: Optional[str]
    offer: Optional[str]
    sku: Optional[str]
    version: Optional[str] = None


@dataclass(frozen=True)
class VMDescriptor:
    name: str
    network_interface_ids: Tuple[str, ...]
    image_reference: ImageReference


def expected_nic_id(subscription_id: str, resource_group: str, nic_name: str) -> str:
    """Build the full resource ID of a network interface"""
    return NIC_ID_FORMAT.format(
        subscription_id=subscription_id,
        resource_group=resource_group,
        nic_name=nic_name,
    )


def nic_attached(
    vm: VMDescriptor, subscription_id: str, resource_group: str, nic_name: str
) -> bool:
    """Check whether the NIC's resource ID is one of the VM's attached interfaces"""
    nic_id = expected_nic_id(subscription_id, resource_group, nic_name)
    return nic_id in set(vm.network_interface_ids)


def image_mismatches(
    actual: ImageReference, expected: ImageReference
) -> List[Tuple[str, Optional[str], Optional[str]]]:
    """Return (field, expected, actual) for every image field that differs"""
    mismatches = []
    for name in IMAGE_FIELDS:
        want = getattr(expected, name)
        got = getattr(actual, name)
        if want != got:
            mismatches.append((name, want, got))
    return mismatches


class AzureInspector:
    """Azure SDK clients are created lazily, one per subscription"""

    def __init__(
        self,
        credential=None,
        compute_client_factory=None,
        network_client_factory=None,
    ):
        self._credential = credential
        self._compute_client_factory = (
            compute_client_factory or ComputeManagementClient
        )
        self._network_client_factory = (
            network_client_factory or NetworkManagementClient
        )
        self._compute_clients = {}
        self._network_clients = {}
        self._lock = threading.Lock()

    def get_credential(self):
        """Return the Azure credential, creating a DefaultAzureCredential if needed."""
        with self._lock:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            return self._credential

    def get_compute_client(self, subscription_id: str):
        credential = self.get_credential()
        with self._lock:
            if subscription_id not in self._compute_clients:
                self._compute_clients[subscription_id] = self._compute_client_factory(
                    credential, subscription_id
                )
            return self._compute_clients[subscription_id]

    def get_network_client(self, subscription_id: str):
        credential = self.get_credential()
        with self._lock:
            if subscription_id not in self._network_clients:
                self._network_clients[subscription_id] = self._network_client_factory(
                    credential, subscription_id
                )
            return self._network_clients[subscription_id]

    def virtual_machine_exists(
        self, name: str, resource_group: str, subscription_id: str
    ) -> bool:
        client = self.get_compute_client(subscription_id)
        try:
            client.virtual_machines.get(resource_group, name)
        except ResourceNotFoundError:
            logger.info("VM %s not found in %s", name, resource_group)
            return False
        except AzureError as e:
            raise InspectionFailure(
                f"Failed to look up VM {name} in {resource_group}: {e}"
            ) from e
        return True

    def network_interface_exists(
        self, name: str, resource_group: str, subscription_id: str
    ) -> bool:
        client = self.get_network_client(subscription_id)
        try:
            client.network_interfaces.get(resource_group, name)
        except ResourceNotFoundError:
            logger.info("NIC %s not found in %s", name, resource_group)
            return False
        except AzureError as e:
            raise InspectionFailure(
                f"Failed to look up NIC {name} in {resource_group}: {e}"
            ) from e
        return True

    def get_virtual_machine(
        self, name: str, resource_group: str, subscription_id: str
    ) -> VMDescriptor:
        """Fetch a VM and reduce it to the fields the scenarios check"""
        client = self.get_compute_client(subscription_id)
        try:
            vm = client.virtual_machines.get(resource_group, name)
        except AzureError as e:
            raise InspectionFailure(
                f"Failed to get VM details for {name} in {resource_group}: {e}"
            ) from e
        return describe_virtual_machine(vm, name)


def describe_virtual_machine(vm, name: str) -> VMDescriptor:
    """Convert an azure-mgmt-compute VirtualMachine into a VMDescriptor"""
    network_profile = getattr(vm, "network_profile", None)
    if network_profile is None or network_profile.network_interfaces is None:
        raise InspectionFailure(f"VM {name} reports no network interfaces")

    nic_ids = tuple(
        ref.id for ref in network_profile.network_interfaces if ref.id is not None
    )

    storage_profile = getattr(vm, "storage_profile", None)
    image = storage_profile.image_reference if storage_profile else None
    if image is None:
        raise InspectionFailure(f"VM {name} reports no image reference")

    return VMDescriptor(
        name=vm.name or name,
        network_interface_ids=nic_ids,
        image_reference=ImageReference(
            publisher=image.publisher,
            offer=image.offer,
            sku=image.sku,
            version=image.version,
        ),
    )
