"""Backup identifiers and zip archives of materialized trees."""

from __future__ import annotations

import os
import re
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlsplit

from etcd_to_s3.errors import WriteError

ARCHIVE_EXTENSION = "zip"

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9]+")


def make_backup_id(endpoint_url: str, created_at: datetime) -> str:
    if created_at.tzinfo is None:
        raise ValueError("created_at must be timezone-aware")
    netloc = urlsplit(endpoint_url).netloc or endpoint_url
    slug = _UNSAFE_ID_CHARS.sub("-", netloc).strip("-") or "etcd"
    timestamp = created_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{slug}-{timestamp}"


def archive_name(backup_id: str) -> str:
    return f"{backup_id}.{ARCHIVE_EXTENSION}"


def archive_tree(tree_dir: Path) -> Path:
    """Zip ``tree_dir`` into ``<tree_dir>.zip`` next to it.

    Entries are stored relative to the parent directory, so the archive
    unpacks into a single ``<backup_id>/`` directory.
    """
    archive_path = tree_dir.parent / archive_name(tree_dir.name)
    temp_path = archive_path.with_name(archive_path.name + ".tmp")
    base = tree_dir.parent
    try:
        with zipfile.ZipFile(temp_path, "w", zipfile.ZIP_DEFLATED) as archive:
            archive.write(tree_dir, tree_dir.name)
            for root, dirs, files in os.walk(tree_dir):
                dirs.sort()
                root_path = Path(root)
                for name in dirs:
                    path = root_path / name
                    archive.write(path, path.relative_to(base).as_posix())
                for name in sorted(files):
                    path = root_path / name
                    archive.write(path, path.relative_to(base).as_posix())
        temp_path.replace(archive_path)
    except OSError as exc:
        temp_path.unlink(missing_ok=True)
        raise WriteError(archive_path, exc) from exc
    return archive_path
