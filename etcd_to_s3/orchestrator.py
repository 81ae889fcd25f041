"""Backup, stats and explore orchestration logic."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import requests

from etcd_to_s3.archiver import archive_tree, make_backup_id
from etcd_to_s3.config import Config
from etcd_to_s3.distro import KubernetesDistro, backup_prefixes, probe_distro
from etcd_to_s3.errors import InvalidKey, WriteError
from etcd_to_s3.materializer import Materializer
from etcd_to_s3.probe import EtcdEndpoint, open_session, probe_endpoint
from etcd_to_s3.stats import StatsResult, count_keys
from etcd_to_s3.uploader import make_s3_client, publish_archive
from etcd_to_s3.walker import KeyspaceWalker, make_walker


@dataclass(frozen=True)
class BackupRequest:
    no_s3: bool = False
    cancel: threading.Event | None = None


@dataclass(frozen=True)
class BackupArtifact:
    backup_id: str
    local_directory: Path
    archive_path: Path
    distro: KubernetesDistro
    object_key: str | None


@dataclass(frozen=True)
class ExploreResult:
    endpoint: EtcdEndpoint
    distro: KubernetesDistro


class _EtcdCommand:
    def __init__(
        self,
        config: Config,
        logger: logging.Logger | None = None,
        session_factory: Callable[..., requests.Session] = open_session,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.session_factory = session_factory

    def _connect(
        self, session: requests.Session, cancel: threading.Event | None = None
    ) -> KeyspaceWalker:
        endpoint = probe_endpoint(
            self.config.etcd.endpoint,
            self.config.etcd.tls,
            session,
            timeout=self.config.etcd.timeout_seconds,
            api_version=self.config.etcd.api_version,
        )
        self.logger.info(
            "event=endpoint_probed url=%s server_version=%s protocol=v%d secure=%s",
            endpoint.url,
            endpoint.server_version,
            endpoint.protocol_version,
            endpoint.secure,
        )
        return make_walker(
            endpoint,
            session,
            timeout=self.config.etcd.timeout_seconds,
            page_size=self.config.etcd.page_size,
            cancel=cancel,
        )


class BackupOrchestrator(_EtcdCommand):
    def __init__(
        self,
        config: Config,
        logger: logging.Logger | None = None,
        session_factory: Callable[..., requests.Session] = open_session,
        s3_client_factory: Callable[..., object] = make_s3_client,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(config, logger, session_factory)
        self.s3_client_factory = s3_client_factory
        self.now = now or (lambda: datetime.now(timezone.utc))

    def run(self, request: BackupRequest) -> BackupArtifact:
        start_time = time.monotonic()
        with self.session_factory(self.config.etcd.tls) as session:
            walker = self._connect(session, request.cancel)
            distro = probe_distro(walker)
            backup_id = make_backup_id(walker.endpoint.url, self.now())
            tree_dir = self.config.global_cfg.work_dir / backup_id
            self.logger.info(
                "event=backup_start backup_id=%s distro=%s tree=%s",
                backup_id,
                distro.value,
                tree_dir,
            )
            materializer = self._materialize(walker, distro, tree_dir, request.cancel)

        archive_path = archive_tree(tree_dir)
        self.logger.info(
            "event=archive_created backup_id=%s path=%s", backup_id, archive_path
        )

        object_key = None
        if request.no_s3:
            self.logger.info("event=backup_no_s3 status=skipped")
        else:
            client = self.s3_client_factory(
                self.config.s3, self.config.s3.timeout_seconds
            )
            result = publish_archive(client, archive_path, self.config.s3)
            object_key = result.key
            self.logger.info(
                "event=backup_uploaded backup_id=%s bucket=%s key=%s size=%d",
                backup_id,
                self.config.s3.bucket,
                result.key,
                result.size,
            )

        self.logger.info(
            "event=backup_metrics backup_id=%s files=%d directories=%d "
            "total_bytes=%d elapsed_seconds=%.3f",
            backup_id,
            materializer.files_written,
            materializer.directories_created,
            materializer.bytes_written,
            time.monotonic() - start_time,
        )
        return BackupArtifact(
            backup_id=backup_id,
            local_directory=tree_dir,
            archive_path=archive_path,
            distro=distro,
            object_key=object_key,
        )

    def _materialize(
        self,
        walker: KeyspaceWalker,
        distro: KubernetesDistro,
        tree_dir: Path,
        cancel: threading.Event | None,
    ) -> Materializer:
        try:
            tree_dir.mkdir(parents=True)
        except OSError as exc:
            raise WriteError(tree_dir, exc) from exc
        materializer = Materializer(tree_dir, cancel)
        try:
            for prefix in backup_prefixes(distro, walker.protocol_version):
                for entry in walker.walk(prefix):
                    try:
                        materializer.write(entry)
                    except InvalidKey as exc:
                        self.logger.warning(
                            "event=backup_key_skipped key=%r reason=%s",
                            exc.key,
                            exc.reason,
                        )
        finally:
            materializer.discard_sentinels()
        return materializer


class StatsOrchestrator(_EtcdCommand):
    def run(self) -> dict[KubernetesDistro, StatsResult]:
        results: dict[KubernetesDistro, StatsResult] = {}
        with self.session_factory(self.config.etcd.tls) as session:
            walker = self._connect(session)
            for distro in KubernetesDistro:
                result = count_keys(walker, distro)
                self.logger.info(
                    "event=stats_collected distro=%s key_count=%d total_bytes=%d",
                    distro.value,
                    result.key_count,
                    result.total_bytes,
                )
                results[distro] = result
        return results


class ExploreOrchestrator(_EtcdCommand):
    def run(self) -> ExploreResult:
        with self.session_factory(self.config.etcd.tls) as session:
            walker = self._connect(session)
            distro = probe_distro(walker)
        return ExploreResult(endpoint=walker.endpoint, distro=distro)
