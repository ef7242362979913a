"""Resource types and the declared-resource model."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any


class LifecycleStatus(str, Enum):
    """Lifecycle of a resource during an apply."""

    PLANNED = "planned"
    CREATING = "creating"
    ACTIVE = "active"
    UPDATING = "updating"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ResourceType:
    """Static description of a resource type tag."""

    tag: str
    outputs: frozenset[str]
    required: tuple[str, ...] = ()
    immutable: frozenset[str] = frozenset()
    sensitive_outputs: frozenset[str] = frozenset()
    identity: tuple[str, ...] = ()
    cidr_attributes: tuple[str, ...] = ()
    local: bool = False


RESOURCE_TYPES: Mapping[str, ResourceType] = {
    rtype.tag: rtype
    for rtype in (
        ResourceType(
            tag="keypair",
            outputs=frozenset(
                {"id", "key_name", "fingerprint", "public_key_openssh", "private_key_pem"}
            ),
            required=("key_name",),
            immutable=frozenset({"key_name", "algorithm", "rsa_bits"}),
            sensitive_outputs=frozenset({"private_key_pem"}),
            identity=("key_name",),
        ),
        ResourceType(
            tag="network",
            outputs=frozenset({"id", "cidr_block"}),
            required=("cidr_block",),
            immutable=frozenset({"cidr_block"}),
            cidr_attributes=("cidr_block",),
        ),
        ResourceType(
            tag="subnet",
            outputs=frozenset({"id", "cidr_block", "availability_zone"}),
            required=("network_id", "cidr_block"),
            immutable=frozenset({"network_id", "cidr_block", "availability_zone"}),
            cidr_attributes=("cidr_block",),
        ),
        ResourceType(
            tag="gateway",
            outputs=frozenset({"id"}),
            required=("network_id",),
            immutable=frozenset({"network_id"}),
        ),
        ResourceType(
            tag="route-table",
            outputs=frozenset({"id"}),
            required=("network_id",),
            immutable=frozenset({"network_id"}),
        ),
        ResourceType(
            tag="security-group",
            outputs=frozenset({"id", "name"}),
            required=("network_id", "name"),
            immutable=frozenset({"network_id", "name", "description"}),
            identity=("network_id", "name"),
        ),
        ResourceType(
            tag="compute-instance",
            outputs=frozenset(
                {"id", "public_ip", "private_ip", "public_dns", "availability_zone"}
            ),
            required=("image", "instance_type", "subnet_id"),
            immutable=frozenset({"image", "subnet_id", "key_name", "user_data"}),
        ),
        ResourceType(
            tag="generated-file",
            outputs=frozenset({"id", "path", "sha256"}),
            required=("path", "content"),
            immutable=frozenset({"path"}),
            identity=("path",),
            local=True,
        ),
    )
}


def resource_type(tag: str) -> ResourceType:
    """Return the :class:`ResourceType` for *tag* or raise ``KeyError``."""
    return RESOURCE_TYPES[tag]


@dataclass(frozen=True, slots=True)
class Reference:
    """A ``${target.output}`` reference found in an attribute."""

    attribute: str
    target: str
    output: str
    sensitive: bool = False


@dataclass(frozen=True, slots=True)
class Resource:
    """A declared resource in the graph snapshot."""

    name: str
    type: str
    attributes: Mapping[str, Any]
    depends_on: frozenset[str]
    explicit_depends_on: frozenset[str]
    references: tuple[Reference, ...]
    index: int

    @property
    def spec(self) -> ResourceType:
        """Return the static type description."""
        return RESOURCE_TYPES[self.type]

    def referenced_attributes(self, target: str) -> frozenset[str]:
        """Return the top-level attributes that reference *target*."""
        return frozenset(ref.attribute for ref in self.references if ref.target == target)

    def is_sensitive_attribute(self, attribute: str) -> bool:
        """Return ``True`` when *attribute* carries a sensitive value."""
        return any(ref.sensitive for ref in self.references if ref.attribute == attribute)


__all__ = [
    "RESOURCE_TYPES",
    "LifecycleStatus",
    "Reference",
    "Resource",
    "ResourceType",
    "resource_type",
]
