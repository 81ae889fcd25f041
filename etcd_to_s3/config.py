"""Configuration loading and validation."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for 3.10
    import tomli as tomllib  # type: ignore[no-redef]

MiB = 1024 * 1024

DEFAULT_LOG_LEVEL = "info"
DEFAULT_WORK_DIR = "/tmp/etcd_to_s3"
DEFAULT_ETCD_ENDPOINT = "http://127.0.0.1:2379"
DEFAULT_API_VERSION = "auto"
DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_PAGE_SIZE = 1000
DEFAULT_S3_REGION = "us-east-1"
DEFAULT_S3_SECURE = True
DEFAULT_S3_CREATE_BUCKET = False
DEFAULT_S3_TIMEOUT_SECONDS = 60.0
DEFAULT_PART_SIZE_BYTES = 64 * MiB
MIN_PART_SIZE_BYTES = 5 * MiB

ENV_CLIENT_CERT = "RS_ETCD_CLIENT_CERT"
ENV_CLIENT_KEY = "RS_ETCD_CLIENT_KEY"
ENV_CA_CERT = "RS_ETCD_CA_CERT"
ENV_ACCESS_KEY_ID = "ACCESS_KEY_ID"
ENV_SECRET_ACCESS_KEY = "SECRET_ACCESS_KEY"

API_VERSIONS = ("auto", "2", "3")


class ConfigError(ValueError):
    """Raised when configuration is invalid."""


@dataclass(frozen=True)
class TLSConfig:
    client_cert: Path | None = None
    client_key: Path | None = None
    ca_cert: Path | None = None

    @property
    def supplied(self) -> bool:
        return (
            self.client_cert is not None
            and self.client_key is not None
            and self.ca_cert is not None
        )


@dataclass(frozen=True)
class GlobalConfig:
    log_level: str
    work_dir: Path


@dataclass(frozen=True)
class EtcdConfig:
    endpoint: str
    api_version: str
    timeout_seconds: float
    page_size: int
    tls: TLSConfig = field(default_factory=TLSConfig)


@dataclass(frozen=True)
class S3Config:
    endpoint: str
    bucket: str
    region: str
    access_key_id: str | None
    secret_access_key: str | None
    secure: bool
    create_bucket: bool
    part_size_bytes: int
    storage_class: str
    sse: str
    timeout_seconds: float = DEFAULT_S3_TIMEOUT_SECONDS

    @property
    def endpoint_url(self) -> str | None:
        if not self.endpoint:
            return None
        if "://" in self.endpoint:
            return self.endpoint
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.endpoint}"


@dataclass(frozen=True)
class Config:
    global_cfg: GlobalConfig
    etcd: EtcdConfig
    s3: S3Config

    @staticmethod
    def from_dict(
        data: dict[str, Any], environ: Mapping[str, str] | None = None
    ) -> "Config":
        env = environ or {}
        global_data = data.get("global", {})
        etcd_data = data.get("etcd", {})
        s3_data = data.get("s3", {})

        global_cfg = GlobalConfig(
            log_level=str(global_data.get("log_level", DEFAULT_LOG_LEVEL)),
            work_dir=_expand_path(global_data.get("work_dir", DEFAULT_WORK_DIR)),
        )
        tls = TLSConfig(
            client_cert=_optional_path(
                env.get(ENV_CLIENT_CERT) or etcd_data.get("client_cert")
            ),
            client_key=_optional_path(
                env.get(ENV_CLIENT_KEY) or etcd_data.get("client_key")
            ),
            ca_cert=_optional_path(env.get(ENV_CA_CERT) or etcd_data.get("ca_cert")),
        )
        etcd = EtcdConfig(
            endpoint=str(etcd_data.get("endpoint", DEFAULT_ETCD_ENDPOINT)),
            api_version=str(etcd_data.get("api_version", DEFAULT_API_VERSION)),
            timeout_seconds=float(
                etcd_data.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
            ),
            page_size=int(etcd_data.get("page_size", DEFAULT_PAGE_SIZE)),
            tls=tls,
        )
        s3 = S3Config(
            endpoint=str(s3_data.get("endpoint", "")),
            bucket=str(s3_data.get("bucket", "")),
            region=str(s3_data.get("region", DEFAULT_S3_REGION)),
            access_key_id=env.get(ENV_ACCESS_KEY_ID)
            or s3_data.get("access_key_id"),
            secret_access_key=env.get(ENV_SECRET_ACCESS_KEY)
            or s3_data.get("secret_access_key"),
            secure=bool(s3_data.get("secure", DEFAULT_S3_SECURE)),
            create_bucket=bool(
                s3_data.get("create_bucket", DEFAULT_S3_CREATE_BUCKET)
            ),
            part_size_bytes=int(
                s3_data.get("part_size_bytes", DEFAULT_PART_SIZE_BYTES)
            ),
            storage_class=str(s3_data.get("storage_class", "")),
            sse=str(s3_data.get("sse", "")),
            timeout_seconds=float(
                s3_data.get("timeout_seconds", DEFAULT_S3_TIMEOUT_SECONDS)
            ),
        )
        config = Config(global_cfg=global_cfg, etcd=etcd, s3=s3)
        validate_config(config)
        return config


def load_config(path: Path, environ: Mapping[str, str] | None = None) -> Config:
    if not path.is_absolute():
        raise ConfigError(f"config path must be absolute: {path}")
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except OSError as exc:
        raise ConfigError(f"failed to read config: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid config: {exc}") from exc
    return Config.from_dict(data, environ)


def apply_overrides(
    config: Config,
    log_level: str | None = None,
    endpoint: str | None = None,
    work_dir: str | None = None,
    remote: str | None = None,
    bucket: str | None = None,
) -> Config:
    """Return a copy of ``config`` with command-line values applied."""
    global_cfg = config.global_cfg
    etcd = config.etcd
    s3 = config.s3
    if log_level:
        global_cfg = replace(global_cfg, log_level=log_level)
    if work_dir:
        global_cfg = replace(global_cfg, work_dir=_expand_path(work_dir))
    if endpoint:
        etcd = replace(etcd, endpoint=endpoint)
    if remote:
        s3 = replace(s3, endpoint=remote)
    if bucket:
        s3 = replace(s3, bucket=bucket)
    updated = Config(global_cfg=global_cfg, etcd=etcd, s3=s3)
    validate_config(updated)
    return updated


def validate_config(config: Config) -> None:
    _validate_log_level(config.global_cfg.log_level)
    if not config.global_cfg.work_dir.is_absolute():
        raise ConfigError(
            f"global.work_dir must be an absolute path: {config.global_cfg.work_dir}"
        )

    if config.etcd.api_version not in API_VERSIONS:
        raise ConfigError(
            f"etcd.api_version must be one of {list(API_VERSIONS)}; "
            f"got {config.etcd.api_version}"
        )
    _validate_positive(config.etcd.timeout_seconds, "etcd.timeout_seconds")
    _validate_positive(config.etcd.page_size, "etcd.page_size")

    _validate_positive(config.s3.timeout_seconds, "s3.timeout_seconds")
    if not config.s3.region:
        raise ConfigError("s3.region is required")
    if config.s3.part_size_bytes < MIN_PART_SIZE_BYTES:
        raise ConfigError("s3.part_size_bytes must be >= 5 MiB")
    if bool(config.s3.access_key_id) != bool(config.s3.secret_access_key):
        raise ConfigError(
            "s3 credentials need both an access key id and a secret access key"
        )


def require_s3_target(config: Config) -> None:
    if not config.s3.bucket:
        raise ConfigError("s3.bucket is required")


def _expand_path(raw: Any) -> Path:
    return Path(str(raw)).expanduser()


def _optional_path(raw: Any) -> Path | None:
    if raw is None or raw == "":
        return None
    return _expand_path(raw)


def _validate_positive(value: float, field_name: str) -> None:
    if value <= 0:
        raise ConfigError(f"{field_name} must be > 0")


def _validate_log_level(value: str) -> None:
    valid = {"debug", "info", "warning", "error", "critical"}
    if value.lower() not in valid:
        raise ConfigError(
            f"global.log_level must be one of {sorted(valid)}; got {value}"
        )
