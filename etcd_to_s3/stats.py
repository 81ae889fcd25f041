"""Key count and size statistics per distribution."""

from __future__ import annotations

from dataclasses import dataclass

from etcd_to_s3.distro import KubernetesDistro, namespace_prefixes
from etcd_to_s3.walker import KeyspaceWalker

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


@dataclass(frozen=True)
class StatsResult:
    key_count: int = 0
    total_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"key_count": self.key_count, "total_bytes": self.total_bytes}


def count_keys(walker: KeyspaceWalker, distro: KubernetesDistro) -> StatsResult:
    """Count entries and value bytes below the namespaces of ``distro``.

    Directory entries add to the count but not to the size. A namespace
    that does not exist yields a zero result.
    """
    key_count = 0
    total_bytes = 0
    for prefix in namespace_prefixes(distro, walker.protocol_version):
        for entry in walker.walk(prefix):
            key_count += 1
            if not entry.is_directory:
                total_bytes += len(entry.value)
    return StatsResult(key_count=key_count, total_bytes=total_bytes)


def format_size(total_bytes: int) -> str:
    value = float(max(total_bytes, 0))
    unit_index = 0
    while value >= 1000.0 and unit_index < len(_SIZE_UNITS) - 1:
        value /= 1000.0
        unit_index += 1
    return f"{value:.2f}{_SIZE_UNITS[unit_index]}"
