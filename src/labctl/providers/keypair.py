"""SSH key pair provider.

Key material is generated locally with ``cryptography``; only the public half
is imported into the backend. The private half is returned as a
:class:`~labctl.sensitive.SensitiveValue` output so the applier can hand it
to the generated-file resource in the same run. It is never persisted in
state.
"""
from __future__ import annotations

import base64
import hashlib
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from ..backends.base import BackendError, BackendResource, ResourceBackend
from ..sensitive import SensitiveValue
from .cloud import CloudProvider

DEFAULT_RSA_BITS = 4096


@dataclass(frozen=True)
class KeyMaterial:
    """Freshly generated SSH key pair."""

    private_key_pem: str
    public_key_openssh: str
    fingerprint: str


def generate_key_material(
    algorithm: str = "rsa", *, rsa_bits: int = DEFAULT_RSA_BITS
) -> KeyMaterial:
    """Generate an RSA or Ed25519 key pair."""
    private_key: rsa.RSAPrivateKey | ed25519.Ed25519PrivateKey
    if algorithm == "rsa":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=rsa_bits)
        private_format = serialization.PrivateFormat.TraditionalOpenSSL
    elif algorithm == "ed25519":
        private_key = ed25519.Ed25519PrivateKey.generate()
        private_format = serialization.PrivateFormat.OpenSSH
    else:
        raise ValueError(f"Unsupported key algorithm '{algorithm}'.")

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=private_format,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_openssh = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
        .decode("ascii")
    )
    return KeyMaterial(
        private_key_pem=private_pem,
        public_key_openssh=public_openssh,
        fingerprint=openssh_fingerprint(public_openssh),
    )


def openssh_fingerprint(public_key: str) -> str:
    """Return the ``SHA256:`` fingerprint ``ssh-keygen -l`` prints."""
    blob = base64.b64decode(public_key.split()[1])
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii").rstrip("=")
    return f"SHA256:{digest}"


class KeypairProvider(CloudProvider):
    """Generate key material and import the public key into the backend."""

    def __init__(self, backend: ResourceBackend) -> None:
        """Bind to the backend's ``keypair`` type."""
        super().__init__(backend, "keypair")

    def create(
        self, name: str, attributes: Mapping[str, Any], *, timeout: float | None = None
    ) -> BackendResource:
        """Generate a key pair and import its public half."""
        algorithm = str(attributes.get("algorithm", "rsa"))
        try:
            material = generate_key_material(
                algorithm, rsa_bits=int(attributes.get("rsa_bits", DEFAULT_RSA_BITS))
            )
        except ValueError as exc:
            raise BackendError(str(exc)) from exc

        imported = self.backend.create(
            "keypair",
            name,
            {
                "key_name": attributes["key_name"],
                "public_key": material.public_key_openssh,
                "tags": dict(attributes.get("tags") or {}),
            },
            timeout=timeout,
        )
        outputs = {
            **imported.outputs,
            "public_key_openssh": material.public_key_openssh,
            "fingerprint": material.fingerprint,
            "private_key_pem": SensitiveValue(material.private_key_pem),
        }
        return BackendResource(
            id=imported.id,
            status=imported.status,
            outputs=outputs,
            checksum=imported.checksum,
        )

    def update(
        self,
        name: str,
        resource_id: str,
        attributes: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> BackendResource:
        """Only tags can change in place; the imported public key is kept."""
        current = self.backend.read("keypair", resource_id)
        payload = {
            "key_name": attributes["key_name"],
            "public_key": current.outputs.get("public_key_openssh"),
            "tags": dict(attributes.get("tags") or {}),
        }
        return self.backend.update("keypair", resource_id, payload, timeout=timeout)


__all__ = ["KeyMaterial", "KeypairProvider", "generate_key_material", "openssh_fingerprint"]
