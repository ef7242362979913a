"""Built-in single-host lab topology.

When the configuration carries no explicit ``resources:`` list, the lab is
described by these declarations: an SSH key pair and its private key file, a
network with one public subnet, an internet gateway and a route table, a
security group opening the configured service ports to ``allowed_cidr``, and
the compute instance that bootstraps itself on first boot.
"""
from __future__ import annotations

from collections.abc import Mapping

from .bootstrap.userdata import render_user_data
from .config import AppConfig, BootstrapConfig, LabSettings


def lab_declarations(
    settings: LabSettings,
    bootstrap: BootstrapConfig,
) -> list[dict[str, object]]:
    """Return the resource declarations for the lab described by *settings*."""
    tags = {"Project": settings.name, "ManagedBy": "labctl", **settings.tags}

    def named(suffix: str) -> dict[str, str]:
        return {**tags, "Name": f"{settings.name}-{suffix}"}

    ingress = [
        {
            "description": service,
            "port": port,
            "protocol": "tcp",
            "cidr_blocks": [settings.allowed_cidr],
        }
        for service, port in settings.ports.items()
    ]
    return [
        {
            "name": "lab_key",
            "type": "keypair",
            "attributes": {
                "key_name": settings.key.name,
                "algorithm": settings.key.algorithm,
                "tags": named("key"),
            },
        },
        {
            "name": "lab_key_file",
            "type": "generated-file",
            "attributes": {
                "path": str(settings.key.private_key_path),
                "content": "${lab_key.private_key_pem}",
                "mode": "0600",
            },
        },
        {
            "name": "lab_network",
            "type": "network",
            "attributes": {
                "cidr_block": settings.network_cidr,
                "enable_dns_hostnames": True,
                "tags": named("vpc"),
            },
        },
        {
            "name": "lab_subnet",
            "type": "subnet",
            "attributes": {
                "network_id": "${lab_network.id}",
                "cidr_block": settings.subnet_cidr,
                "availability_zone": settings.availability_zone,
                "map_public_ip_on_launch": True,
                "tags": named("subnet"),
            },
        },
        {
            "name": "lab_gateway",
            "type": "gateway",
            "attributes": {"network_id": "${lab_network.id}", "tags": named("igw")},
        },
        {
            "name": "lab_routes",
            "type": "route-table",
            "attributes": {
                "network_id": "${lab_network.id}",
                "routes": [{"cidr_block": "0.0.0.0/0", "gateway_id": "${lab_gateway.id}"}],
                "subnet_ids": ["${lab_subnet.id}"],
                "tags": named("rt"),
            },
        },
        {
            "name": "lab_security",
            "type": "security-group",
            "attributes": {
                "network_id": "${lab_network.id}",
                "name": f"{settings.name}-sg",
                "description": f"Service access for {settings.name}",
                "ingress": ingress,
                "egress": [{"port": 0, "protocol": "-1", "cidr_blocks": ["0.0.0.0/0"]}],
                "tags": named("sg"),
            },
        },
        {
            "name": "lab_instance",
            "type": "compute-instance",
            "attributes": {
                "image": settings.instance.image,
                "instance_type": settings.instance.instance_type,
                "subnet_id": "${lab_subnet.id}",
                "security_group_ids": ["${lab_security.id}"],
                "key_name": "${lab_key.key_name}",
                "volume_size": settings.instance.volume_size,
                "user_data": render_user_data(settings, bootstrap),
                "tags": named("host"),
            },
            "depends_on": ["lab_routes"],
        },
    ]


def declarations_for(config: AppConfig) -> list[Mapping[str, object]]:
    """Return explicit declarations from *config*, or the built-in topology."""
    if config.resources is not None:
        return list(config.resources)
    return list(lab_declarations(config.lab, config.bootstrap))


__all__ = ["declarations_for", "lab_declarations"]
