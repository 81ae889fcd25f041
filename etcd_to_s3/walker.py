"""Traversal of etcd v2 and v3 keyspaces."""

from __future__ import annotations

import base64
import threading
from dataclasses import dataclass
from typing import Any, Iterator
from urllib.parse import quote

import requests

from etcd_to_s3.errors import KeyspaceReadError, OperationCancelled
from etcd_to_s3.probe import EtcdEndpoint, ProtocolVersion, gateway_prefix

V2_KEYS_PATH = "/v2/keys"
V2_KEY_NOT_FOUND = 100


@dataclass(frozen=True)
class KeyEntry:
    key: str
    value: bytes = b""
    is_directory: bool = False


class KeyspaceWalker:
    """Walks every key below a prefix, yielding ``KeyEntry`` objects lazily."""

    protocol_version: ProtocolVersion

    def __init__(
        self,
        endpoint: EtcdEndpoint,
        session: requests.Session,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.session = session
        self.timeout = timeout
        self.cancel = cancel

    def walk(self, prefix: str) -> Iterator[KeyEntry]:  # pragma: no cover - interface
        raise NotImplementedError

    def has_keys(self, prefix: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise OperationCancelled("walk cancelled")

    def _decode(self, response: requests.Response, prefix: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise KeyspaceReadError(prefix, f"invalid JSON response: {exc}") from exc
        if not isinstance(payload, dict):
            raise KeyspaceReadError(prefix, "unexpected response shape")
        return payload


class V2Walker(KeyspaceWalker):
    protocol_version = ProtocolVersion.V2

    def walk(self, prefix: str) -> Iterator[KeyEntry]:
        """Read the whole subtree with one recursive request and flatten it."""
        node = self._fetch(prefix, prefix, recursive=True)
        if node is None:
            return
        yield from self._flatten(node)

    def has_keys(self, prefix: str) -> bool:
        node = self._fetch(prefix, prefix)
        if node is None:
            return False
        if not node.get("dir"):
            return True
        return bool(node.get("nodes"))

    def _flatten(self, node: dict[str, Any]) -> Iterator[KeyEntry]:
        if not node.get("dir"):
            yield _v2_leaf(node)
            return
        self._check_cancelled()
        yield KeyEntry(key=node.get("key", "/"), is_directory=True)
        for child in node.get("nodes", []):
            yield from self._flatten(child)

    def _fetch(
        self, key: str, prefix: str, recursive: bool = False
    ) -> dict[str, Any] | None:
        self._check_cancelled()
        url = self.endpoint.url + V2_KEYS_PATH + quote(key, safe="/")
        params = {"recursive": "true"} if recursive else None
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise KeyspaceReadError(prefix, exc) from exc
        if response.status_code == 404:
            payload = self._decode(response, prefix)
            if payload.get("errorCode") == V2_KEY_NOT_FOUND:
                return None
            raise KeyspaceReadError(prefix, f"GET {key} returned 404: {payload}")
        if response.status_code != 200:
            raise KeyspaceReadError(
                prefix, f"GET {key} returned status {response.status_code}"
            )
        node = self._decode(response, prefix).get("node")
        if not isinstance(node, dict):
            raise KeyspaceReadError(prefix, f"GET {key} returned no node")
        return node


class V3Walker(KeyspaceWalker):
    protocol_version = ProtocolVersion.V3

    def __init__(
        self,
        endpoint: EtcdEndpoint,
        session: requests.Session,
        timeout: float,
        page_size: int,
        cancel: threading.Event | None = None,
    ) -> None:
        super().__init__(endpoint, session, timeout, cancel)
        self.page_size = page_size
        self.range_url = (
            endpoint.url + gateway_prefix(endpoint.server_version) + "/kv/range"
        )

    def walk(self, prefix: str) -> Iterator[KeyEntry]:
        start = scan_prefix(prefix).encode("utf-8")
        range_end = prefix_range_end(start)
        revision: str | None = None
        while True:
            payload = self._range(start, range_end, self.page_size, revision, prefix)
            if revision is None:
                revision = payload.get("header", {}).get("revision")
            kvs = payload.get("kvs", [])
            last_key = b""
            for kv in kvs:
                last_key = _b64decode(kv.get("key", ""), prefix)
                yield KeyEntry(
                    key=last_key.decode("utf-8", errors="surrogateescape"),
                    value=_b64decode(kv.get("value", ""), prefix),
                )
            if not payload.get("more") or not kvs:
                return
            start = last_key + b"\x00"

    def has_keys(self, prefix: str) -> bool:
        start = scan_prefix(prefix).encode("utf-8")
        payload = self._range(start, prefix_range_end(start), 1, None, prefix)
        return bool(payload.get("kvs"))

    def _range(
        self,
        start: bytes,
        range_end: bytes,
        limit: int,
        revision: str | None,
        prefix: str,
    ) -> dict[str, Any]:
        self._check_cancelled()
        body: dict[str, Any] = {
            "key": _b64encode(start),
            "range_end": _b64encode(range_end),
            "limit": limit,
        }
        if revision is not None:
            body["revision"] = revision
        try:
            response = self.session.post(self.range_url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise KeyspaceReadError(prefix, exc) from exc
        if response.status_code != 200:
            raise KeyspaceReadError(
                prefix, f"range request returned status {response.status_code}"
            )
        return self._decode(response, prefix)


def make_walker(
    endpoint: EtcdEndpoint,
    session: requests.Session,
    timeout: float,
    page_size: int,
    cancel: threading.Event | None = None,
) -> KeyspaceWalker:
    if endpoint.protocol_version == ProtocolVersion.V2:
        return V2Walker(endpoint, session, timeout, cancel)
    return V3Walker(endpoint, session, timeout, page_size, cancel)


def scan_prefix(prefix: str) -> str:
    """Return the v3 range start covering everything below ``prefix``."""
    return prefix.rstrip("/") + "/"


def prefix_range_end(start: bytes) -> bytes:
    """Return the smallest key greater than every key beginning with ``start``."""
    end = bytearray(start)
    for index in range(len(end) - 1, -1, -1):
        if end[index] < 0xFF:
            end[index] += 1
            return bytes(end[: index + 1])
    # every byte is 0xff: scan to the end of the keyspace
    return b"\x00"


def _v2_leaf(node: dict[str, Any]) -> KeyEntry:
    value = node.get("value") or ""
    return KeyEntry(key=node["key"], value=value.encode("utf-8"))


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str, prefix: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except ValueError as exc:
        raise KeyspaceReadError(prefix, f"invalid base64 payload: {exc}") from exc
