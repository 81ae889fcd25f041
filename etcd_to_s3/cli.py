"""CLI entrypoint and logging setup."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Iterable, Mapping

from etcd_to_s3.config import (
    Config,
    ConfigError,
    apply_overrides,
    load_config,
    require_s3_target,
)
from etcd_to_s3.distro import KubernetesDistro
from etcd_to_s3.errors import EtcdBackupError
from etcd_to_s3.orchestrator import (
    BackupOrchestrator,
    BackupRequest,
    ExploreOrchestrator,
    StatsOrchestrator,
)
from etcd_to_s3.stats import format_size

PROG = "etcd_to_s3"


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog=PROG)
    subparsers = parser.add_subparsers(dest="command")

    backup = subparsers.add_parser("backup", help="back up an etcd keyspace")
    _add_common_arguments(backup)
    backup.add_argument("--work-dir", help="local working directory")
    backup.add_argument("--remote", help="object storage endpoint host:port")
    backup.add_argument("--bucket", help="object storage bucket")
    backup.add_argument(
        "--no-s3", action="store_true", help="skip the upload for diagnostics"
    )

    stats = subparsers.add_parser(
        "stats", help="count Kubernetes keys and their size"
    )
    _add_common_arguments(stats)

    explore = subparsers.add_parser(
        "explore", help="report etcd version, security and distribution"
    )
    _add_common_arguments(explore)

    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)
    if not argv:
        parser.print_help()
        raise SystemExit(0)
    args = parser.parse_args(argv)
    if args.command is None:
        parser.error("command required")
    return args


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="path to config.toml")
    parser.add_argument("--log-level", help="override log level")
    parser.add_argument("--endpoint", help="etcd endpoint URL")


def setup_logging(level: str) -> None:
    numeric = _parse_level(level)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main(
    argv: Iterable[str] | None = None, environ: Mapping[str, str] | None = None
) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        return int(exc.code or 0)

    if environ is None:
        environ = os.environ
    try:
        config = _load_and_override_config(args, environ)
        if args.command == "backup" and not args.no_s3:
            require_s3_target(config)
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    setup_logging(config.global_cfg.log_level)
    logging.getLogger(__name__).info(
        "event=command_start command=%s endpoint=%s",
        args.command,
        config.etcd.endpoint,
    )
    if args.command == "backup":
        return run_backup(args, config)
    if args.command == "stats":
        return run_stats(config)
    if args.command == "explore":
        return run_explore(config)
    return 2


def run_backup(args: argparse.Namespace, config: Config) -> int:
    logger = logging.getLogger(__name__)
    cancel = threading.Event()
    previous = _install_cancel_handler(cancel)
    try:
        artifact = BackupOrchestrator(config).run(
            BackupRequest(no_s3=args.no_s3, cancel=cancel)
        )
    except EtcdBackupError as exc:
        logger.error("event=backup_failed error=%s", exc)
        return 1
    finally:
        _restore_cancel_handler(previous)
    logger.info(
        "event=backup_complete backup_id=%s archive=%s",
        artifact.backup_id,
        artifact.archive_path,
    )
    print(artifact.backup_id)
    return 0


def run_stats(config: Config) -> int:
    logger = logging.getLogger(__name__)
    try:
        results = StatsOrchestrator(config).run()
    except EtcdBackupError as exc:
        logger.error("event=stats_failed error=%s", exc)
        return 1
    vanilla = results[KubernetesDistro.VANILLA]
    print(
        f"{KubernetesDistro.VANILLA.label} "
        f"[keys:{vanilla.key_count}, size:{vanilla.total_bytes}]"
    )
    openshift = results[KubernetesDistro.OPENSHIFT]
    if openshift.key_count > 0:
        print(
            f"{KubernetesDistro.OPENSHIFT.label} "
            f"[keys:{openshift.key_count}, size:{openshift.total_bytes}]"
        )
    total = vanilla.total_bytes + openshift.total_bytes
    logger.info("event=stats_complete total_size=%s", format_size(total))
    return 0


def run_explore(config: Config) -> int:
    logger = logging.getLogger(__name__)
    try:
        result = ExploreOrchestrator(config).run()
    except EtcdBackupError as exc:
        logger.error("event=explore_failed error=%s", exc)
        return 1
    endpoint = result.endpoint
    print(f"etcd endpoint: {endpoint.url}")
    print(f"etcd version: {endpoint.server_version} (API v{int(endpoint.protocol_version)})")
    print(f"secure: {'yes' if endpoint.secure else 'no'}")
    print(f"distribution: {result.distro.label}")
    return 0


def _load_and_override_config(
    args: argparse.Namespace, environ: Mapping[str, str]
) -> Config:
    if args.config:
        config = load_config(Path(args.config).expanduser(), environ)
    else:
        config = Config.from_dict({}, environ)
    return apply_overrides(
        config,
        log_level=args.log_level,
        endpoint=args.endpoint,
        work_dir=getattr(args, "work_dir", None),
        remote=getattr(args, "remote", None),
        bucket=getattr(args, "bucket", None),
    )


def _install_cancel_handler(cancel: threading.Event):
    if threading.current_thread() is not threading.main_thread():
        return None

    def _handle(signum, frame) -> None:
        logging.getLogger(__name__).warning(
            "event=cancel_requested signal=%d", signum
        )
        cancel.set()

    return signal.signal(signal.SIGTERM, _handle)


def _restore_cancel_handler(previous) -> None:
    if previous is not None:
        signal.signal(signal.SIGTERM, previous)


def _parse_level(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        pass
    normalized = value.lower()
    mapping = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }
    if normalized not in mapping:
        raise ConfigError(f"invalid log level: {value}")
    return mapping[normalized]
