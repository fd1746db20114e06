"""Parse command line option strings into typed configuration variants.

Three small grammars are accepted:

* listeners: ``tcp:<host:port>``, ``tcp+tls:<host:port>`` (with a generated
  self-signed certificate) and ``unix:<path>``;
* seals: ``http(s)://<token>@<addr>/<mount>/keys/<key>`` for transit and
  ``static://[<hex key>]`` for a static key (random when omitted);
* storage names: ``raft``, ``file``, ``inmem`` and ``postgresql`` (also
  ``psql`` and ``postgres``).
"""
from __future__ import annotations

import secrets
from collections.abc import Iterable
from urllib.parse import parse_qs, urlsplit

from .errors import ValidationError
from .instance_config import (
    FileStorage,
    InmemStorage,
    Listener,
    PostgreSQLStorage,
    RaftStorage,
    Seal,
    StaticSeal,
    Storage,
    TCPListener,
    TransitSeal,
    UnixListener,
)
from .process import split_host_port
from .tls import generate_self_signed

STORAGE_NAMES = {
    "": RaftStorage,
    "raft": RaftStorage,
    "file": FileStorage,
    "inmem": InmemStorage,
    "psql": PostgreSQLStorage,
    "postgres": PostgreSQLStorage,
    "postgresql": PostgreSQLStorage,
}
LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")


def parse_listener(spec: str) -> Listener:
    """Return the listener described by *spec*."""
    kind, sep, value = spec.partition(":")
    if not sep or not value:
        raise ValidationError(
            f"Malformed listener {spec!r}: expected tcp:<host:port>, tcp+tls:<host:port> or unix:<path>."
        )
    if kind == "tcp":
        listener = TCPListener(address=value)
    elif kind == "tcp+tls":
        host, _port = split_host_port(value)
        hosts = list(LOOPBACK_HOSTS)
        if host and host not in hosts and host not in {"0.0.0.0", "::"}:
            hosts.append(host)
        listener = TCPListener(address=value, tls=generate_self_signed(hosts))
    elif kind == "unix":
        return UnixListener(path=value)
    else:
        raise ValidationError(f"Unknown listener type {kind!r} in {spec!r}; expected tcp, tcp+tls or unix.")
    listener.validate()
    return listener


def parse_listeners(specs: Iterable[str]) -> list[Listener]:
    """Parse every listener spec in order."""
    return [parse_listener(spec) for spec in specs]


def parse_storage(name: str) -> Storage:
    """Return the storage backend called *name*."""
    try:
        return STORAGE_NAMES[name.strip().lower()]()
    except KeyError:
        raise ValidationError(
            f"Unknown storage {name!r}; supported values are raft, file, inmem or postgresql."
        ) from None


def parse_seal(uri: str, *, index: int = 0) -> Seal:
    """Return the seal described by *uri*."""
    parts = urlsplit(uri)
    if parts.scheme in {"http", "https"}:
        token = parts.username
        if not token:
            raise ValidationError(
                f"Malformed seal URI at index {index}: expected the transit token as the user name in {uri!r}."
            )
        if "/keys/" not in parts.path:
            raise ValidationError(f"Malformed seal URI at index {index}: no '/keys/' segment in {parts.path!r}.")
        mount_path, _, key_name = parts.path.rpartition("/keys/")
        mount_path = mount_path.strip("/")
        if not mount_path or not key_name:
            raise ValidationError(f"Malformed seal URI at index {index}: missing mount path or key name in {uri!r}.")
        host = parts.hostname or ""
        if ":" in host:
            host = f"[{host}]"
        address = f"{parts.scheme}://{host}" + (f":{parts.port}" if parts.port else "")
        disabled = parse_qs(parts.query).get("disabled", ["false"])[-1].lower() in {"1", "true", "yes"}
        seal: Seal = TransitSeal(
            address=address,
            token=token,
            mount_path=mount_path,
            key_name=key_name,
            disabled=disabled,
        )
    elif parts.scheme == "static":
        key = parts.netloc or secrets.token_hex(32)
        seal = StaticSeal(current_key=key)
    else:
        raise ValidationError(f"Unknown type of seal URI at index {index}: {parts.scheme!r}.")
    seal.validate()
    return seal


def parse_seals(uris: Iterable[str]) -> list[Seal]:
    """Parse every seal URI in order."""
    return [parse_seal(uri, index=index) for index, uri in enumerate(uris)]


__all__ = [
    "STORAGE_NAMES",
    "parse_listener",
    "parse_listeners",
    "parse_seal",
    "parse_seals",
    "parse_storage",
]
