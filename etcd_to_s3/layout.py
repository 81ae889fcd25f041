"""Mapping of etcd keys onto a directory tree.

Keys are split on ``/`` and every component is escaped on its own, so the
mapping is injective and each component can be decoded again with
``unescape_component``. Escaped sequences use ``%XX`` with the literal ``%``
always escaped, which keeps the placeholders from colliding with key text.
Key bytes that are not valid UTF-8 are written as the ``%XX`` of the raw byte.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from urllib.parse import unquote_to_bytes

from etcd_to_s3.errors import InvalidKey

SEPARATOR = "/"
ROOT_KEY = "/"
ROOT_SENTINEL_SUFFIX = ".root-key"
EMPTY_COMPONENT = "%"

_ESCAPES = {
    "%": "%25",
    ":": "%3A",
    "\\": "%5C",
    "\x00": "%00",
}
_SURROGATE_FIRST = 0xD800
_SURROGATE_LAST = 0xDFFF
_ESCAPED_BYTE_FIRST = 0xDC80
_ESCAPED_BYTE_LAST = 0xDCFF


def escape_component(component: str) -> str:
    if component == "":
        return EMPTY_COMPONENT
    if component in (".", ".."):
        return component.replace(".", "%2E")
    return "".join(_escape_char(char) for char in component)


def _escape_char(char: str) -> str:
    if char in _ESCAPES:
        return _ESCAPES[char]
    code = ord(char)
    if _ESCAPED_BYTE_FIRST <= code <= _ESCAPED_BYTE_LAST:
        # an undecodable key byte, see surrogateescape
        return f"%{code - 0xDC00:02X}"
    if _SURROGATE_FIRST <= code <= _SURROGATE_LAST:
        raw = char.encode("utf-8", "surrogatepass")
        return "".join(f"%{byte:02X}" for byte in raw)
    return char


def unescape_component(name: str) -> str:
    if name == EMPTY_COMPONENT:
        return ""
    return unquote_to_bytes(name).decode("utf-8", "surrogateescape")


def key_components(key: str) -> list[str]:
    validate_key(key)
    if key == ROOT_KEY:
        raise InvalidKey(key, "the root key has no components")
    return key[1:].split(SEPARATOR)


def validate_key(key: str) -> None:
    if not key:
        raise InvalidKey(key, "key is empty")
    if not key.startswith(SEPARATOR):
        raise InvalidKey(key, f"key must start with {SEPARATOR!r}")


def relative_key_path(key: str) -> PurePosixPath:
    return PurePosixPath(*(escape_component(part) for part in key_components(key)))


def key_from_relative_path(path: PurePosixPath) -> str:
    return SEPARATOR + SEPARATOR.join(unescape_component(part) for part in path.parts)


def root_sentinel_path(work_dir: Path) -> Path:
    resolved = work_dir.resolve()
    return resolved.parent / f"{resolved.name}{ROOT_SENTINEL_SUFFIX}"


def map_to_path(key: str, work_dir: Path) -> Path:
    """Return the filesystem path for ``key`` below ``work_dir``.

    The root key is the one exception: it maps to a sentinel file next to
    ``work_dir`` that callers remove once written.
    """
    validate_key(key)
    if key == ROOT_KEY:
        return root_sentinel_path(work_dir)
    return work_dir / relative_key_path(key)


def key_ancestors(key: str) -> list[str]:
    """Return the directory keys implied by ``key``, outermost first."""
    components = key_components(key)
    ancestors: list[str] = []
    for index in range(1, len(components)):
        ancestors.append(SEPARATOR + SEPARATOR.join(components[:index]))
    return ancestors
