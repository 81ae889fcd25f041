"""Orchestrator tests."""

from __future__ import annotations

import tempfile
import threading
import unittest
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator
from unittest import mock

from botocore.exceptions import ClientError
from fake_etcd import FakeEtcdV2, FakeEtcdV3

from etcd_to_s3.config import Config
from etcd_to_s3.distro import KubernetesDistro
from etcd_to_s3.errors import (
    KeyspaceReadError,
    OperationCancelled,
    PublishError,
    WriteError,
)
from etcd_to_s3.orchestrator import (
    BackupOrchestrator,
    BackupRequest,
    ExploreOrchestrator,
    StatsOrchestrator,
)
from etcd_to_s3.probe import ProtocolVersion
from etcd_to_s3.stats import StatsResult
from etcd_to_s3.walker import KeyEntry, KeyspaceWalker

NAMESPACE = '{"kind":"Namespace","apiVersion":"v1"}'
FIXED_NOW = datetime(2026, 10, 19, 12, 30, 5, tzinfo=timezone.utc)


class FakeS3:
    def __init__(self, buckets: tuple[str, ...] = ("bucket",)) -> None:
        self.buckets = set(buckets)
        self.objects: dict[str, bytes] = {}

    def head_bucket(self, **kwargs):
        if kwargs["Bucket"] not in self.buckets:
            raise ClientError({"Error": {"Code": "404"}}, "HeadBucket")
        return {}

    def put_object(self, **kwargs):
        self.objects[kwargs["Key"]] = kwargs["Body"].read()
        return {"ETag": "etag-put"}


class StubWalker(KeyspaceWalker):
    protocol_version = ProtocolVersion.V3

    def __init__(self, endpoint, entries: list[KeyEntry]) -> None:
        super().__init__(endpoint, session=None, timeout=1)
        self.entries = entries

    def walk(self, prefix: str) -> Iterator[KeyEntry]:
        if prefix == "/registry":
            yield from self.entries

    def has_keys(self, prefix: str) -> bool:
        return False


def make_config(work_dir: str, endpoint: str) -> Config:
    return Config.from_dict(
        {
            "global": {"work_dir": work_dir},
            "etcd": {"endpoint": endpoint, "page_size": 2},
            "s3": {"bucket": "bucket"},
        },
        {},
    )


class BackupOrchestratorTests(unittest.TestCase):
    def _orchestrator(self, config: Config, session, s3=None) -> BackupOrchestrator:
        s3 = s3 if s3 is not None else FakeS3()
        return BackupOrchestrator(
            config,
            session_factory=lambda tls: session,
            s3_client_factory=lambda target, timeout: s3,
            now=lambda: FIXED_NOW,
        )

    def test_v2_backup_end_to_end(self) -> None:
        session = FakeEtcdV2(
            {
                "/kubernetes.io/namespaces/kube-system": NAMESPACE,
                "/kubernetes.io/ranges/serviceips": "",
                "/other/ignored": "x",
            }
        )
        s3 = FakeS3()
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:4001")
            artifact = self._orchestrator(config, session, s3).run(BackupRequest())
            backup_id = artifact.backup_id
            self.assertEqual(backup_id, "127-0-0-1-4001-20261019T123005Z")
            self.assertEqual(artifact.local_directory, Path(temp_dir) / backup_id)
            self.assertEqual(artifact.archive_path, Path(temp_dir) / f"{backup_id}.zip")
            self.assertEqual(artifact.distro, KubernetesDistro.VANILLA)
            self.assertEqual(artifact.object_key, f"{backup_id}.zip")
            with zipfile.ZipFile(artifact.archive_path) as archive:
                names = archive.namelist()
                self.assertEqual(
                    archive.read(f"{backup_id}/kubernetes.io/namespaces/kube-system"),
                    NAMESPACE.encode(),
                )
            self.assertEqual(
                s3.objects[f"{backup_id}.zip"], artifact.archive_path.read_bytes()
            )
        self.assertIn(f"{backup_id}/kubernetes.io/ranges/serviceips", names)
        self.assertFalse(any("other" in name for name in names))
        self.assertTrue(session.closed)

    def test_v3_openshift_backup_includes_both_namespaces(self) -> None:
        session = FakeEtcdV3(
            {
                "/registry/namespaces/kube-system": NAMESPACE.encode(),
                "/registry/pods/default/web": b"\x00binary",
                "/openshift.io/routes/default/r": b"route",
                "/registryfoo/x": b"no",
            }
        )
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            artifact = self._orchestrator(config, session).run(BackupRequest())
            backup_id = artifact.backup_id
            with zipfile.ZipFile(artifact.archive_path) as archive:
                self.assertEqual(
                    archive.read(f"{backup_id}/registry/namespaces/kube-system"),
                    NAMESPACE.encode(),
                )
                self.assertEqual(
                    archive.read(f"{backup_id}/registry/pods/default/web"),
                    b"\x00binary",
                )
                self.assertEqual(
                    archive.read(f"{backup_id}/openshift.io/routes/default/r"),
                    b"route",
                )
                names = archive.namelist()
        self.assertEqual(artifact.distro, KubernetesDistro.OPENSHIFT)
        self.assertFalse(any("registryfoo" in name for name in names))

    def test_undecodable_v3_key_is_archived_escaped(self) -> None:
        session = FakeEtcdV3({"/registry/namespaces/default": b"{}"})
        session.data[b"/registry/secrets/\xff\xfe"] = b"secret"
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            artifact = self._orchestrator(config, session).run(
                BackupRequest(no_s3=True)
            )
            with zipfile.ZipFile(artifact.archive_path) as archive:
                self.assertEqual(
                    archive.read(f"{artifact.backup_id}/registry/secrets/%FF%FE"),
                    b"secret",
                )

    def test_s3_client_uses_its_own_timeout(self) -> None:
        session = FakeEtcdV3({"/registry/namespaces/default": b"{}"})
        timeouts: list[float] = []

        def s3_client_factory(target, timeout):
            timeouts.append(timeout)
            return FakeS3()

        with tempfile.TemporaryDirectory() as temp_dir:
            config = Config.from_dict(
                {
                    "global": {"work_dir": temp_dir},
                    "etcd": {"timeout_seconds": 2},
                    "s3": {"bucket": "bucket", "timeout_seconds": 45},
                },
                {},
            )
            BackupOrchestrator(
                config,
                session_factory=lambda tls: session,
                s3_client_factory=s3_client_factory,
                now=lambda: FIXED_NOW,
            ).run(BackupRequest())
        self.assertEqual(timeouts, [45.0])

    def test_no_s3_skips_upload(self) -> None:
        session = FakeEtcdV3({"/registry/namespaces/default": b"{}"})
        s3 = FakeS3()
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            artifact = self._orchestrator(config, session, s3).run(
                BackupRequest(no_s3=True)
            )
            self.assertTrue(artifact.archive_path.exists())
        self.assertIsNone(artifact.object_key)
        self.assertEqual(s3.objects, {})

    def test_invalid_key_is_skipped_with_warning(self) -> None:
        session = FakeEtcdV3()
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            orchestrator = self._orchestrator(config, session)

            def fake_make_walker(endpoint, session, **kwargs):
                return StubWalker(
                    endpoint,
                    [
                        KeyEntry(key="compact_rev_key", value=b"1"),
                        KeyEntry(key="/registry/namespaces/default", value=b"{}"),
                    ],
                )

            with mock.patch(
                "etcd_to_s3.orchestrator.make_walker", side_effect=fake_make_walker
            ):
                with self.assertLogs("etcd_to_s3.orchestrator", level="WARNING") as logs:
                    artifact = orchestrator.run(BackupRequest(no_s3=True))
            with zipfile.ZipFile(artifact.archive_path) as archive:
                names = archive.namelist()
        self.assertIn("event=backup_key_skipped", logs.output[0])
        self.assertIn(
            f"{artifact.backup_id}/registry/namespaces/default", names
        )

    def test_root_key_is_not_archived(self) -> None:
        session = FakeEtcdV3()
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            orchestrator = self._orchestrator(config, session)

            def fake_make_walker(endpoint, session, **kwargs):
                return StubWalker(
                    endpoint,
                    [
                        KeyEntry(key="/", value=b"root"),
                        KeyEntry(key="/registry/a", value=b"a"),
                    ],
                )

            with mock.patch(
                "etcd_to_s3.orchestrator.make_walker", side_effect=fake_make_walker
            ):
                artifact = orchestrator.run(BackupRequest(no_s3=True))
            leftovers = sorted(path.name for path in Path(temp_dir).iterdir())
            with zipfile.ZipFile(artifact.archive_path) as archive:
                names = archive.namelist()
        backup_id = artifact.backup_id
        self.assertEqual(leftovers, [backup_id, f"{backup_id}.zip"])
        self.assertEqual(
            names,
            [f"{backup_id}/", f"{backup_id}/registry/", f"{backup_id}/registry/a"],
        )

    def test_publish_failure_keeps_local_archive(self) -> None:
        session = FakeEtcdV3({"/registry/namespaces/default": b"{}"})
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            orchestrator = self._orchestrator(config, session, FakeS3(buckets=()))
            with self.assertRaises(PublishError) as context:
                orchestrator.run(BackupRequest())
            archives = list(Path(temp_dir).glob("*.zip"))
        self.assertEqual(context.exception.cause, "bucket-not-found")
        self.assertEqual(len(archives), 1)

    def test_existing_tree_directory_is_write_error(self) -> None:
        session = FakeEtcdV3({"/registry/namespaces/default": b"{}"})
        with tempfile.TemporaryDirectory() as temp_dir:
            (Path(temp_dir) / "127-0-0-1-2379-20261019T123005Z").mkdir()
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            with self.assertRaises(WriteError):
                self._orchestrator(config, session).run(BackupRequest(no_s3=True))

    def test_read_failure_aborts_before_archive(self) -> None:
        session = FakeEtcdV3(
            {
                "/registry/a": b"1",
                "/registry/b": b"2",
                "/registry/c": b"3",
            }
        )
        session.fail_after = 3
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            with self.assertRaises(KeyspaceReadError):
                self._orchestrator(config, session).run(BackupRequest(no_s3=True))
            self.assertEqual(list(Path(temp_dir).glob("*.zip")), [])

    def test_cancelled_backup_stops(self) -> None:
        session = FakeEtcdV3({"/registry/namespaces/default": b"{}"})
        cancel = threading.Event()
        cancel.set()
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            with self.assertRaises(OperationCancelled):
                self._orchestrator(config, session).run(
                    BackupRequest(no_s3=True, cancel=cancel)
                )
            self.assertEqual(list(Path(temp_dir).glob("*.zip")), [])


class StatsOrchestratorTests(unittest.TestCase):
    def test_counts_each_distro(self) -> None:
        session = FakeEtcdV3(
            {
                "/registry/namespaces/default": b"1234",
                "/registry/namespaces/kube-system": b"12",
                "/openshift.io/routes/default/r": b"123",
            }
        )
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:2379")
            results = StatsOrchestrator(
                config, session_factory=lambda tls: session
            ).run()
        self.assertEqual(
            results,
            {
                KubernetesDistro.VANILLA: StatsResult(key_count=2, total_bytes=6),
                KubernetesDistro.OPENSHIFT: StatsResult(key_count=1, total_bytes=3),
            },
        )


class ExploreOrchestratorTests(unittest.TestCase):
    def test_reports_endpoint_and_distro(self) -> None:
        session = FakeEtcdV2({"/kubernetes.io/namespaces/default": "{}"})
        with tempfile.TemporaryDirectory() as temp_dir:
            config = make_config(temp_dir, "http://127.0.0.1:4001")
            result = ExploreOrchestrator(
                config, session_factory=lambda tls: session
            ).run()
        self.assertEqual(result.endpoint.protocol_version, ProtocolVersion.V2)
        self.assertEqual(result.endpoint.server_version, "2.3.8")
        self.assertFalse(result.endpoint.secure)
        self.assertEqual(result.distro, KubernetesDistro.VANILLA)


if __name__ == "__main__":
    unittest.main()
