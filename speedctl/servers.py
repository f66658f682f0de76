"""
Measurement server definitions.

A server definition names a backend and the four paths the background worker
needs on it.  Lists of definitions are exchanged as JSON arrays of objects
shaped like::

    {
        "name": "Frankfurt",
        "server": "//speed.example.net/",
        "dlURL": "garbage.php",
        "ulURL": "empty.php",
        "pingURL": "empty.php",
        "getIpURL": "getIP.php"
    }

``server`` may be protocol-relative (``//host/``); it is resolved against the
scheme the controller runs under when the definition is validated.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from .constants import DEFAULT_SCHEME, UNREACHABLE
from .errors import InvalidServerDefinition


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class ServerDefinition:
    """A single measurement backend."""

    name: Optional[str] = None
    server: Optional[str] = None
    dl_url: Optional[str] = None
    ul_url: Optional[str] = None
    ping_url: Optional[str] = None
    get_ip_url: Optional[str] = None

    # -- Constructors -------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ServerDefinition:
        return cls(
            name=data.get("name"),
            server=data.get("server"),
            dl_url=data.get("dlURL"),
            ul_url=data.get("ulURL"),
            ping_url=data.get("pingURL"),
            get_ip_url=data.get("getIpURL"),
        )

    # -- Derived URLs -------------------------------------------------------

    @property
    def download_url(self) -> str:
        return f"{self.server}{self.dl_url}"

    @property
    def upload_url(self) -> str:
        return f"{self.server}{self.ul_url}"

    @property
    def ping_endpoint(self) -> str:
        return f"{self.server}{self.ping_url}"

    @property
    def get_ip_endpoint(self) -> str:
        return f"{self.server}{self.get_ip_url}"

    # -- Serialisation ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "server": self.server,
            "dlURL": self.dl_url,
            "ulURL": self.ul_url,
            "pingURL": self.ping_url,
            "getIpURL": self.get_ip_url,
        }


@dataclass
class ServerCandidate:
    """A server under consideration during one selection run."""

    server: ServerDefinition
    best_latency_ms: float = UNREACHABLE

    @property
    def reachable(self) -> bool:
        return self.best_latency_ms != UNREACHABLE


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

# (attribute, wire name, description) in the order they are checked.
_REQUIRED_FIELDS = (
    ("name", "name", "Name"),
    ("server", "server", "Server address"),
    ("dl_url", "dlURL", "Download URL"),
    ("ul_url", "ulURL", "Upload URL"),
    ("ping_url", "pingURL", "Ping URL"),
    ("get_ip_url", "getIpURL", "GetIP URL"),
)

ServerLike = Union[ServerDefinition, Mapping[str, Any]]


def as_server(server: ServerLike) -> ServerDefinition:
    """Coerce a wire-shaped mapping into a ``ServerDefinition``."""
    if isinstance(server, ServerDefinition):
        return server
    if isinstance(server, Mapping):
        return ServerDefinition.from_dict(server)
    raise InvalidServerDefinition(
        f"Invalid server definition: expected an object, got {type(server).__name__}"
    )


def normalize_base_url(url: str, scheme: str = DEFAULT_SCHEME) -> str:
    """Ensure a trailing slash and resolve a protocol-relative prefix."""
    if not url.endswith("/"):
        url += "/"
    if url.startswith("//"):
        url = f"{scheme}:{url}"
    return url


def validate_server(server: ServerLike, scheme: str = DEFAULT_SCHEME) -> ServerDefinition:
    """
    Check every required field and normalise the base URL in place.

    Raises ``InvalidServerDefinition`` naming the first missing field.
    """
    server = as_server(server)

    for attr, wire_name, label in _REQUIRED_FIELDS:
        value = getattr(server, attr)
        if not isinstance(value, str) or not value:
            raise InvalidServerDefinition(
                f"Invalid server definition: {label} string missing ({wire_name})",
                field=wire_name,
            )

    server.server = normalize_base_url(server.server, scheme)
    return server
