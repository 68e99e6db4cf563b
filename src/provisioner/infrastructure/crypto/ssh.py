"""SSH keypair generation for the platform bot account."""

from __future__ import annotations

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from provisioner.domain.ports.services import KeyPair, KeyPairGenerator


class Ed25519KeyPairGenerator(KeyPairGenerator):
    """Unencrypted ed25519 keys in OpenSSH encoding."""

    def __init__(self, comment: str = "kbot") -> None:
        self._comment = comment

    def generate(self) -> KeyPair:
        key = ed25519.Ed25519PrivateKey.generate()
        private_key = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")
        public_key = key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode("utf-8")
        if self._comment:
            public_key = f"{public_key} {self._comment}"
        return KeyPair(public_key=public_key, private_key=private_key)
