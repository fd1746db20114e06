"""TLS material for TCP listeners.

A listener carries its certificate chain (leaf first, issuing CA last) and
private key as PEM strings inside the persisted node record. On every render
the material is written to three fixed file names inside the node directory:
``fullchain.pem`` (the whole chain), ``ca.pem`` (the last certificate) and
``leaf-key.pem`` (the private key).

:func:`generate_self_signed` builds a throwaway two-certificate chain for
local listeners so that HTTPS can be exercised without an external CA.
"""
from __future__ import annotations

import ipaddress
import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .errors import ValidationError

TLS_CA_NAME = "ca.pem"
TLS_CERTS_NAME = "fullchain.pem"
TLS_KEY_NAME = "leaf-key.pem"


class PublicKeyProtocol(Protocol):
    """Subset of the public key API used for comparisons."""

    def public_bytes(
        self,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the serialised public key."""


class PrivateKeyProtocol(Protocol):
    """Subset of the private key API used for comparisons."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the matching public key."""


@dataclass(frozen=True)
class TLSPaths:
    """Locations of the written TLS files."""

    ca: Path
    certificates: Path
    key: Path


@dataclass(frozen=True)
class TLSBundle:
    """Certificate chain (leaf first) plus the leaf's private key."""

    certificates: tuple[str, ...]
    key: str

    def __post_init__(self) -> None:
        """Normalise the chain into a tuple of stripped PEM blocks."""
        object.__setattr__(
            self,
            "certificates",
            tuple(cert.strip() for cert in self.certificates),
        )
        object.__setattr__(self, "key", self.key.strip())

    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Parse every PEM block and check the key matches the leaf."""
        if not self.certificates:
            raise ValidationError("TLS configuration requires at least one certificate.")
        parsed = [_load_certificate(pem, index) for index, pem in enumerate(self.certificates)]
        key = _load_private_key(self.key)
        if not _public_keys_match(parsed[0], key):
            raise ValidationError("TLS private key does not match the leaf certificate.")

    def ca_certificate(self) -> x509.Certificate | None:
        """Return the issuing CA (the last certificate) when the chain has one."""
        if len(self.certificates) < 2:
            return None
        return _load_certificate(self.certificates[-1], len(self.certificates) - 1)

    def write(self, directory: Path) -> TLSPaths:
        """Write chain, CA and key files into *directory*."""
        directory.mkdir(parents=True, exist_ok=True)
        paths = TLSPaths(
            ca=directory / TLS_CA_NAME,
            certificates=directory / TLS_CERTS_NAME,
            key=directory / TLS_KEY_NAME,
        )
        chain = "".join(cert + "\n" for cert in self.certificates)
        _write_file(paths.certificates, chain, 0o644)
        _write_file(paths.ca, (self.certificates[-1] + "\n") if self.certificates else "", 0o644)
        _write_file(paths.key, self.key + "\n", 0o600)
        return paths

    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"certs": list(self.certificates), "key": self.key}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TLSBundle:
        """Rebuild a bundle from :meth:`to_dict` output."""
        certs = data.get("certs")
        key = data.get("key")
        if not isinstance(certs, Sequence) or isinstance(certs, (str, bytes)):
            raise ValidationError("TLS configuration field 'certs' must be a list of PEM strings.")
        if not isinstance(key, str):
            raise ValidationError("TLS configuration field 'key' must be a PEM string.")
        return cls(certificates=tuple(str(cert) for cert in certs), key=key)

    @classmethod
    def from_files(cls, certificate: Path, key: Path, chain: Path | None = None) -> TLSBundle:
        """Load a bundle from PEM files on disk."""
        pems = _split_pem(certificate.read_text(encoding="utf-8"))
        if chain is not None:
            pems.extend(_split_pem(chain.read_text(encoding="utf-8")))
        bundle = cls(certificates=tuple(pems), key=key.read_text(encoding="utf-8"))
        bundle.validate()
        return bundle


def generate_self_signed(
    hosts: Iterable[str] = ("127.0.0.1", "localhost"),
    *,
    common_name: str = "devbao",
    days: int = 30,
) -> TLSBundle:
    """Create a local CA and a leaf certificate valid for *hosts*."""
    now = datetime.now(UTC)
    not_after = now + timedelta(days=days)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, f"{common_name} Local CA")])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(ca_key, hashes.SHA256())
    )

    leaf_key = ec.generate_private_key(ec.SECP256R1())
    names: list[x509.GeneralName] = []
    for host in hosts:
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            names.append(x509.DNSName(host))
    leaf_cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(ca_name)
        .public_key(leaf_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName(names), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    return TLSBundle(
        certificates=(
            leaf_cert.public_bytes(serialization.Encoding.PEM).decode("ascii"),
            ca_cert.public_bytes(serialization.Encoding.PEM).decode("ascii"),
        ),
        key=leaf_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii"),
    )


def _split_pem(text: str) -> list[str]:
    marker = "-----END CERTIFICATE-----"
    blocks = []
    for chunk in text.split(marker):
        if "-----BEGIN CERTIFICATE-----" in chunk:
            blocks.append(chunk.strip() + "\n" + marker)
    return blocks


def _write_file(path: Path, content: str, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    os.chmod(path, mode)


def _load_certificate(pem: str, index: int) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(pem.encode("utf-8"))
    except ValueError as exc:
        raise ValidationError(f"Failed to parse TLS certificate at index {index}: {exc}") from exc


def _load_private_key(pem: str) -> PrivateKeyProtocol:
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Failed to parse TLS private key: {exc}") from exc
    return cast(PrivateKeyProtocol, key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_public = cert.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_public = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_public == key_public


__all__ = [
    "TLSBundle",
    "TLSPaths",
    "TLS_CA_NAME",
    "TLS_CERTS_NAME",
    "TLS_KEY_NAME",
    "generate_self_signed",
]
