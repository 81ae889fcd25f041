"""Etcd endpoint classification."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from urllib.parse import urlsplit

import requests

from etcd_to_s3.config import TLSConfig
from etcd_to_s3.errors import (
    MalformedEndpoint,
    TransportConfigError,
    UnreachableEndpoint,
)

VERSION_PATH = "/version"
SCHEMES = ("http", "https")


class ProtocolVersion(enum.IntEnum):
    V2 = 2
    V3 = 3


@dataclass(frozen=True)
class EtcdEndpoint:
    url: str
    protocol_version: ProtocolVersion
    secure: bool
    tls: TLSConfig = field(default_factory=TLSConfig)
    server_version: str = ""


def open_session(tls: TLSConfig) -> requests.Session:
    """Build an HTTP session carrying the client certificate and CA bundle."""
    session = requests.Session()
    if tls.client_cert is not None and tls.client_key is not None:
        session.cert = (str(tls.client_cert), str(tls.client_key))
    if tls.ca_cert is not None:
        session.verify = str(tls.ca_cert)
    return session


def check_endpoint_url(url: str, tls: TLSConfig) -> bool:
    """Validate the URL shape and return whether TLS is required."""
    if not url:
        raise MalformedEndpoint("endpoint is empty")
    parts = urlsplit(url)
    if parts.scheme not in SCHEMES:
        raise MalformedEndpoint(
            f"endpoint {url!r} must start with one of {list(SCHEMES)}"
        )
    if not parts.netloc:
        raise MalformedEndpoint(f"endpoint {url!r} has no host")
    secure = parts.scheme == "https"
    if secure and not tls.supplied:
        raise TransportConfigError(
            f"endpoint {url!r} uses https but client cert, client key "
            "and CA cert were not all supplied"
        )
    return secure


def probe_endpoint(
    url: str,
    tls: TLSConfig,
    session: requests.Session,
    timeout: float,
    api_version: str = "auto",
) -> EtcdEndpoint:
    secure = check_endpoint_url(url, tls)
    base_url = url.rstrip("/")
    try:
        response = session.get(base_url + VERSION_PATH, timeout=timeout)
    except requests.RequestException as exc:
        raise UnreachableEndpoint(f"{base_url}: {exc}") from exc
    if not 200 <= response.status_code < 300:
        raise UnreachableEndpoint(
            f"{base_url}: version probe returned status {response.status_code}"
        )
    server_version = parse_server_version(response)
    if server_version is None:
        raise UnreachableEndpoint(f"{base_url}: unrecognised version response")
    if api_version == "auto":
        protocol = _protocol_for(server_version)
        if protocol is None:
            raise UnreachableEndpoint(
                f"{base_url}: unsupported etcd server version {server_version}"
            )
    else:
        protocol = ProtocolVersion(int(api_version))
    return EtcdEndpoint(
        url=base_url,
        protocol_version=protocol,
        secure=secure,
        tls=tls if secure else TLSConfig(),
        server_version=server_version,
    )


def parse_server_version(response: requests.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        # etcd before 2.1 answers with plain text such as "etcd 2.0.13"
        text = response.text.strip()
        if text.startswith("etcd "):
            return text.split(" ", 1)[1]
        return None
    if not isinstance(payload, dict):
        return None
    version = payload.get("etcdserver")
    if not isinstance(version, str) or not version:
        return None
    return version


def gateway_prefix(server_version: str) -> str:
    """Return the JSON gateway path prefix served by a v3 server."""
    major, minor = _major_minor(server_version)
    if major == 3 and minor <= 2:
        return "/v3alpha"
    if major == 3 and minor == 3:
        return "/v3beta"
    return "/v3"


def _protocol_for(server_version: str) -> ProtocolVersion | None:
    major, _minor = _major_minor(server_version)
    if major == 2:
        return ProtocolVersion.V2
    if major >= 3:
        return ProtocolVersion.V3
    return None


def _major_minor(server_version: str) -> tuple[int, int]:
    parts = server_version.split(".")
    try:
        major = int(parts[0])
    except ValueError:
        return 0, 0
    try:
        minor = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        minor = 0
    return major, minor
