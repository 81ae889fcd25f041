"""Writes walked entries into the working tree."""

from __future__ import annotations

import threading
from pathlib import Path

from etcd_to_s3.errors import OperationCancelled, WriteError
from etcd_to_s3.layout import ROOT_KEY, key_ancestors, map_to_path
from etcd_to_s3.walker import KeyEntry


class Materializer:
    def __init__(
        self, work_dir: Path, cancel: threading.Event | None = None
    ) -> None:
        self.work_dir = work_dir
        self.cancel = cancel
        self.files_written = 0
        self.directories_created = 0
        self.bytes_written = 0
        self.sentinels: list[Path] = []
        self._known_dirs: set[Path] = set()

    def write(self, entry: KeyEntry) -> Path:
        """Write ``entry`` and return its path.

        Raises ``InvalidKey`` for keys outside the mapping, which callers
        may skip, and ``WriteError`` for filesystem failures.
        """
        if self.cancel is not None and self.cancel.is_set():
            raise OperationCancelled("materialization cancelled")
        if entry.is_directory and entry.key == ROOT_KEY:
            self._ensure_directory(self.work_dir)
            return self.work_dir
        path = map_to_path(entry.key, self.work_dir)
        if entry.is_directory:
            self._ensure_directory(path)
            return path
        if entry.key != ROOT_KEY:
            for ancestor in key_ancestors(entry.key):
                self._ensure_directory(map_to_path(ancestor, self.work_dir))
        try:
            path.write_bytes(entry.value)
        except OSError as exc:
            raise WriteError(path, exc) from exc
        if entry.key == ROOT_KEY:
            self.sentinels.append(path)
        self.files_written += 1
        self.bytes_written += len(entry.value)
        return path

    def discard_sentinels(self) -> None:
        while self.sentinels:
            self.sentinels.pop().unlink(missing_ok=True)

    def _ensure_directory(self, path: Path) -> None:
        if path in self._known_dirs:
            return
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WriteError(path, exc) from exc
        self._known_dirs.add(path)
        self.directories_created += 1
