"""In-process stand-in for the cloud API.

The sandbox keeps its objects in a YAML file (or only in memory when no path
is given) and mimics the behaviour labctl depends on: AWS-style identifiers,
objects that start ``pending`` and settle after a number of status polls,
``NotFound`` on dangling references, ``DependencyViolation`` when deleting an
object that something else still uses, and checksums over the stored
attributes. ``tamper`` and ``forget`` change objects behind labctl's back to
produce drift; ``inject_failure`` scripts errors for tests.
"""
from __future__ import annotations

import hashlib
import ipaddress
import json
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..fileutil import atomic_write_text
from .base import (
    DELETED_STATUS,
    FAILED_STATUS,
    BackendError,
    BackendNotFoundError,
    BackendResource,
)

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required for the sandbox backend. Install with `pip install labctl`."
    ) from exc

ID_PREFIXES: Mapping[str, str] = {
    "keypair": "key",
    "network": "vpc",
    "subnet": "subnet",
    "gateway": "igw",
    "route-table": "rtb",
    "security-group": "sg",
    "compute-instance": "i",
}
_ERROR_PREFIXES: Mapping[str, str] = {
    "keypair": "InvalidKeyPair",
    "network": "InvalidVpcID",
    "subnet": "InvalidSubnetID",
    "gateway": "InvalidInternetGatewayID",
    "route-table": "InvalidRouteTableID",
    "security-group": "InvalidGroup",
    "compute-instance": "InvalidInstanceID",
}
# Attributes holding identifiers of other objects, and the type they name.
_ID_REFERENCES: Mapping[str, str] = {
    "network_id": "network",
    "subnet_id": "subnet",
    "subnet_ids": "subnet",
    "security_group_ids": "security-group",
}


@dataclass
class _InjectedFailure:
    action: str
    message: str
    times: int
    retryable: bool
    name: str | None = None
    resource_type: str | None = None
    stage: str = "call"

    def matches(self, action: str, resource_type: str, name: str | None) -> bool:
        if self.times <= 0 or self.action != action:
            return False
        if self.resource_type is not None and self.resource_type != resource_type:
            return False
        return self.name is None or self.name == name


class SandboxBackend:
    """Simulated backend implementing :class:`~labctl.backends.base.ResourceBackend`."""

    def __init__(self, path: Path | None = None, *, settle_polls: int = 1) -> None:
        """Open (or start) the sandbox stored at *path*."""
        self.path = Path(path).expanduser() if path is not None else None
        self.settle_polls = settle_polls
        self._lock = threading.RLock()
        self._failures: list[_InjectedFailure] = []
        self.calls: list[tuple[str, str, str]] = []
        self._objects: dict[str, dict[str, Any]] = {}
        self._counter = 0
        self._load()

    # ------------------------------------------------------------------
    # ResourceBackend protocol
    # ------------------------------------------------------------------
    def create(
        self,
        resource_type: str,
        name: str,
        attributes: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> BackendResource:
        """Create an object of *resource_type* for logical resource *name*."""
        with self._lock:
            self._record_call("create", resource_type, name)
            failure = self._take_failure("create", resource_type, name)
            if failure and failure.stage == "call":
                raise BackendError(failure.message, retryable=failure.retryable)
            prefix = ID_PREFIXES.get(resource_type)
            if prefix is None:
                raise BackendError(
                    f"UnsupportedOperation: unknown resource type '{resource_type}'."
                )
            attrs = _plain(attributes)
            self._check_references(resource_type, attrs)
            self._check_duplicates(resource_type, attrs)
            self._counter += 1
            resource_id = f"{prefix}-{self._counter:08x}{_suffix(name)}"
            entry: dict[str, Any] = {
                "type": resource_type,
                "name": name,
                "attributes": attrs,
                "status": "pending" if self.settle_polls > 0 else _stable_status(resource_type),
                "polls_remaining": self.settle_polls,
                "outputs": self._outputs_for(resource_type, resource_id, attrs),
            }
            if failure and failure.stage == "settle":
                entry["status"] = "pending"
                entry["settle_failure"] = failure.message
            self._objects[resource_id] = entry
            self._save()
            return self._snapshot(resource_id)

    def read(self, resource_type: str, resource_id: str) -> BackendResource:
        """Return the snapshot of *resource_id*."""
        with self._lock:
            self._record_call("read", resource_type, resource_id)
            self._require(resource_type, resource_id)
            return self._snapshot(resource_id)

    def update(
        self,
        resource_type: str,
        resource_id: str,
        attributes: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> BackendResource:
        """Replace the stored attributes of *resource_id*."""
        with self._lock:
            self._record_call("update", resource_type, resource_id)
            entry = self._require(resource_type, resource_id)
            failure = self._take_failure("update", resource_type, entry["name"])
            if failure:
                raise BackendError(failure.message, retryable=failure.retryable)
            attrs = _plain(attributes)
            self._check_references(resource_type, attrs)
            entry["attributes"] = attrs
            entry["outputs"] = self._outputs_for(resource_type, resource_id, attrs)
            entry["status"] = "pending" if self.settle_polls > 0 else _stable_status(resource_type)
            entry["polls_remaining"] = self.settle_polls
            self._save()
            return self._snapshot(resource_id)

    def delete(self, resource_type: str, resource_id: str, *, timeout: float | None = None) -> None:
        """Delete *resource_id* unless another object still references it."""
        with self._lock:
            self._record_call("delete", resource_type, resource_id)
            entry = self._require(resource_type, resource_id)
            failure = self._take_failure("delete", resource_type, entry["name"])
            if failure:
                raise BackendError(failure.message, retryable=failure.retryable)
            users = self._referencing(resource_id)
            if users:
                raise BackendError(
                    f"DependencyViolation: {resource_id} has dependent object(s) "
                    f"{', '.join(sorted(users))} and cannot be deleted.",
                    code="DependencyViolation",
                )
            del self._objects[resource_id]
            self._save()

    def status(self, resource_type: str, resource_id: str) -> str:
        """Return the status of *resource_id*, advancing pending objects."""
        with self._lock:
            entry = self._objects.get(resource_id)
            if entry is None:
                return DELETED_STATUS
            if entry["status"] == "pending":
                remaining = int(entry.get("polls_remaining", 0)) - 1
                entry["polls_remaining"] = max(remaining, 0)
                if remaining <= 0:
                    if entry.get("settle_failure"):
                        entry["status"] = FAILED_STATUS
                    else:
                        entry["status"] = _stable_status(resource_type)
                self._save()
            return str(entry["status"])

    # ------------------------------------------------------------------
    # Out-of-band helpers (drift and failure simulation)
    # ------------------------------------------------------------------
    def inject_failure(
        self,
        *,
        action: str = "create",
        message: str = "InternalError: simulated failure",
        name: str | None = None,
        resource_type: str | None = None,
        times: int = 1,
        retryable: bool = False,
        stage: str = "call",
    ) -> None:
        """Make the next *times* matching calls fail with *message*.

        ``stage="settle"`` lets a create succeed but sends the object to
        ``failed`` on its final status poll.
        """
        with self._lock:
            self._failures.append(
                _InjectedFailure(
                    action=action,
                    message=message,
                    times=times,
                    retryable=retryable,
                    name=name,
                    resource_type=resource_type,
                    stage=stage,
                )
            )

    def tamper(self, resource_id: str, **attributes: Any) -> None:
        """Change stored attributes without going through labctl."""
        with self._lock:
            entry = self._objects[resource_id]
            entry["attributes"].update(_plain(attributes))
            self._save()

    def forget(self, resource_id: str) -> None:
        """Delete an object without dependency checks, as if removed by hand."""
        with self._lock:
            self._objects.pop(resource_id, None)
            self._save()

    def find(self, name: str) -> str | None:
        """Return the id of the live object created for logical *name*."""
        with self._lock:
            for resource_id, entry in self._objects.items():
                if entry["name"] == name:
                    return resource_id
            return None

    def object_ids(self) -> list[str]:
        """Return the ids of all live objects."""
        with self._lock:
            return sorted(self._objects)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _record_call(self, action: str, resource_type: str, subject: str) -> None:
        self.calls.append((action, resource_type, subject))

    def _take_failure(
        self, action: str, resource_type: str, name: str | None
    ) -> _InjectedFailure | None:
        for failure in self._failures:
            if failure.matches(action, resource_type, name):
                failure.times -= 1
                return failure
        return None

    def _require(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        entry = self._objects.get(resource_id)
        if entry is None or entry["type"] != resource_type:
            prefix = _ERROR_PREFIXES.get(resource_type, "InvalidResource")
            raise BackendNotFoundError(
                f"{prefix}.NotFound: The {resource_type} ID '{resource_id}' does not exist."
            )
        return entry

    def _check_references(self, resource_type: str, attrs: Mapping[str, Any]) -> None:
        for attribute, target_type in _ID_REFERENCES.items():
            value = attrs.get(attribute)
            if value is None:
                continue
            for target_id in value if isinstance(value, list) else [value]:
                self._require(target_type, str(target_id))
        for route in attrs.get("routes") or []:
            gateway_id = route.get("gateway_id") if isinstance(route, Mapping) else None
            if gateway_id:
                self._require("gateway", str(gateway_id))
        if resource_type == "compute-instance" and attrs.get("key_name"):
            if not any(
                entry["type"] == "keypair"
                and entry["attributes"].get("key_name") == attrs["key_name"]
                for entry in self._objects.values()
            ):
                raise BackendNotFoundError(
                    f"InvalidKeyPair.NotFound: The key pair '{attrs['key_name']}' does not exist."
                )

    def _check_duplicates(self, resource_type: str, attrs: Mapping[str, Any]) -> None:
        for entry in self._objects.values():
            if entry["type"] != resource_type:
                continue
            existing = entry["attributes"]
            if resource_type == "keypair" and existing.get("key_name") == attrs.get("key_name"):
                raise BackendError(
                    f"InvalidKeyPair.Duplicate: The keypair '{attrs.get('key_name')}' "
                    "already exists.",
                    code="Duplicate",
                )
            if (
                resource_type == "security-group"
                and existing.get("network_id") == attrs.get("network_id")
                and existing.get("name") == attrs.get("name")
            ):
                raise BackendError(
                    f"InvalidGroup.Duplicate: The security group '{attrs.get('name')}' "
                    f"already exists for VPC '{attrs.get('network_id')}'.",
                    code="Duplicate",
                )

    def _referencing(self, resource_id: str) -> list[str]:
        # Only containment blocks deletion; list-valued references such as
        # security_group_ids are left dangling until the holder is updated.
        users: list[str] = []
        for other_id, entry in self._objects.items():
            if other_id == resource_id:
                continue
            attrs = entry["attributes"]
            if resource_id in (attrs.get("network_id"), attrs.get("subnet_id")):
                users.append(other_id)
        return users

    def _outputs_for(
        self, resource_type: str, resource_id: str, attrs: Mapping[str, Any]
    ) -> dict[str, Any]:
        outputs: dict[str, Any] = {}
        if resource_type == "keypair":
            outputs["key_name"] = attrs.get("key_name")
            outputs["public_key_openssh"] = attrs.get("public_key")
        elif resource_type in {"network", "subnet"}:
            outputs["cidr_block"] = attrs.get("cidr_block")
            if resource_type == "subnet":
                outputs["availability_zone"] = attrs.get("availability_zone")
        elif resource_type == "security-group":
            outputs["name"] = attrs.get("name")
        elif resource_type == "compute-instance":
            host = self._counter % 250 + 2
            public_ip = f"203.0.113.{host}"
            outputs["public_ip"] = public_ip
            outputs["public_dns"] = f"ec2-{public_ip.replace('.', '-')}.compute-1.amazonaws.com"
            subnet = self._objects.get(str(attrs.get("subnet_id")))
            if subnet:
                network = ipaddress.ip_network(subnet["attributes"]["cidr_block"])
                offset = min(host + 8, network.num_addresses - 2)
                outputs["private_ip"] = str(network.network_address + offset)
                outputs["availability_zone"] = subnet["attributes"].get("availability_zone")
        return outputs

    def _snapshot(self, resource_id: str) -> BackendResource:
        entry = self._objects[resource_id]
        outputs = {"id": resource_id, **entry["outputs"]}
        return BackendResource(
            id=resource_id,
            status=str(entry["status"]),
            outputs=outputs,
            checksum=_checksum(entry["type"], entry["attributes"]),
        )

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise BackendError(f"Failed to read sandbox file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise BackendError(f"Sandbox file {self.path} is not a mapping.")
        objects = data.get("objects") or {}
        self._objects = {str(key): dict(value) for key, value in objects.items()}
        self._counter = int(data.get("counter") or 0)

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {"counter": self._counter, "objects": self._objects}
        try:
            atomic_write_text(self.path, yaml.safe_dump(payload, sort_keys=True), mode=0o600)
        except OSError as exc:
            raise BackendError(f"Failed to write sandbox file {self.path}: {exc}") from exc


def _stable_status(resource_type: str) -> str:
    return "running" if resource_type == "compute-instance" else "available"


def _checksum(resource_type: str, attributes: Mapping[str, Any]) -> str:
    digest = hashlib.sha256(
        json.dumps({"type": resource_type, "attributes": attributes}, sort_keys=True, default=str)
        .encode("utf-8")
    ).hexdigest()
    return f"sha256:{digest}"


def _suffix(name: str) -> str:
    return hashlib.sha256(name.encode("utf-8")).hexdigest()[:9]


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


__all__ = ["ID_PREFIXES", "SandboxBackend"]
