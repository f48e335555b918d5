"""
monkeysphere_core.identity
--------------------------
User ID grammar. Service identities are ``scheme://host[:port]``; anything
else is treated as a user identity and matched verbatim.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import re

from .errors import InvalidIdentityError

_SCHEME = re.compile(r"[a-z][a-z0-9+.-]*")
_LABEL = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")

DEFAULT_PORTS = {"ssh": 22, "https": 443}


@dataclass(frozen=True)
class ServiceIdentity:
    scheme: str
    host: str
    port: Optional[int] = None

    def __str__(self) -> str:
        if self.port is None:
            return f"{self.scheme}://{self.host}"
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def known_hosts_name(self) -> str:
        """``host`` or ``[host]:port`` as OpenSSH writes it."""
        if self.port is None or self.port == DEFAULT_PORTS.get(self.scheme):
            return self.host
        return f"[{self.host}]:{self.port}"


def is_service_identity(value: str) -> bool:
    return "://" in value


def parse_service_identity(value: str) -> ServiceIdentity:
    if not isinstance(value, str) or not value.isascii():
        raise InvalidIdentityError(f"service identity must be ASCII: {value!r}")
    if value != value.strip() or any(c.isspace() for c in value):
        raise InvalidIdentityError(f"service identity contains whitespace: {value!r}")
    scheme, sep, rest = value.lower().partition("://")
    if not sep or not _SCHEME.fullmatch(scheme):
        raise InvalidIdentityError(f"bad scheme in identity: {value!r}")

    host, port = rest, None
    if ":" in rest:
        host, _, port_s = rest.rpartition(":")
        if not port_s.isdigit():
            raise InvalidIdentityError(f"bad port in identity: {value!r}")
        port = int(port_s)
        if not 1 <= port <= 65535:
            raise InvalidIdentityError(f"port out of range in identity: {value!r}")
    if host.endswith("."):
        host = host[:-1]
    if not host or len(host) > 253:
        raise InvalidIdentityError(f"bad host in identity: {value!r}")
    for label in host.split("."):
        if not _LABEL.fullmatch(label):
            raise InvalidIdentityError(f"bad host label {label!r} in identity: {value!r}")
    return ServiceIdentity(scheme, host, port)


def canonical_identity(value: str) -> str:
    """Validate and canonicalise; raises before any keyring query is made."""
    if not isinstance(value, str) or not value:
        raise InvalidIdentityError("empty identity")
    if is_service_identity(value):
        return str(parse_service_identity(value))
    if value != value.strip() or any(ord(c) < 0x20 or ord(c) == 0x7F for c in value):
        raise InvalidIdentityError(f"user identity contains control characters or padding: {value!r}")
    return value


def ssh_host_identity(host: str, port: Optional[int] = None) -> str:
    """Identity for a host seen in known_hosts or on a connection."""
    if host.startswith("[") and "]:" in host:
        host, _, port_s = host[1:].partition("]:")
        port = int(port_s)
    ident = ServiceIdentity("ssh", host.lower(), None if port in (None, 22) else port)
    return canonical_identity(str(ident))
