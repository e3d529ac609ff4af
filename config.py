import logging
import math
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, FrozenSet, List, Mapping, Optional, Tuple, TypeVar

# Configure logger for config module warnings
logger = logging.getLogger(__name__)

# Upload limits
MAX_THUMBNAIL_UPLOAD_SIZE = 10 << 20  # 10 MiB, whole multipart form
MAX_VIDEO_UPLOAD_SIZE = 1 << 30  # 1 GiB, whole request body

# Accepted media types and the extension used for stored objects
THUMBNAIL_MEDIA_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
}
VIDEO_MEDIA_TYPES = {
    "video/mp4": ".mp4",
}

Number = TypeVar("Number", int, float)

STORAGE_BACKENDS = frozenset(["local", "s3"])
THUMBNAIL_STORAGE_MODES = frozenset(["backend", "inline"])


class ConfigError(Exception):
    """Raised when the loaded configuration is inconsistent."""

    pass


def _read_env(name: str, environ: Optional[Mapping[str, str]]) -> Optional[str]:
    return (os.environ if environ is None else environ).get(name)


def _get_number_env(
    name: str,
    default: Number,
    parse: Callable[[str], Number],
    min_val: Optional[Number],
    max_val: Optional[Number],
    environ: Optional[Mapping[str, str]],
) -> Number:
    """
    Parse a numeric setting, falling back to the default with a warning.

    An unset variable yields the default without validation. Bounds are
    inclusive and apply only to values taken from the environment.
    """
    raw = _read_env(name, environ)
    if raw is None:
        return default

    try:
        value = parse(raw)
    except ValueError:
        logger.warning(f"Invalid {name}='{raw}', using default {default}")
        return default

    if isinstance(value, float) and not math.isfinite(value):
        logger.warning(f"Invalid {name}='{raw}' (special float), using default {default}")
        return default
    if min_val is not None and value < min_val:
        logger.warning(f"{name}={value} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and value > max_val:
        logger.warning(f"{name}={value} is above maximum {max_val}, using default {default}")
        return default
    return value


def get_int_env(
    name: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    """Integer setting from `environ` (or os.environ), see _get_number_env."""
    return _get_number_env(name, default, int, min_val, max_val, environ)


def get_float_env(
    name: str,
    default: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> float:
    """Float setting; inf and nan are rejected like malformed values."""
    return _get_number_env(name, default, float, min_val, max_val, environ)


def get_bool_env(name: str, default: bool, environ: Optional[Mapping[str, str]] = None) -> bool:
    """Get a boolean flag. "false", "0", "no" and "off" disable, anything else enables."""
    value = _read_env(name, environ)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off", "")


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class AppConfig:
    """Runtime configuration, passed explicitly to the app and every component."""

    database_url: str = "sqlite:///./tubely.db"
    jwt_secret: str = ""
    port: int = 8091

    # Storage
    storage_backend: str = "local"
    assets_root: Path = Path("./assets")
    public_base_url: str = "http://localhost:8091"
    scratch_dir: Optional[Path] = None
    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_endpoint_url: Optional[str] = None
    s3_cdn_domain: str = ""
    presign_expiry: int = 3600
    thumbnail_storage: str = "backend"

    # Upload limits
    max_thumbnail_upload_size: int = MAX_THUMBNAIL_UPLOAD_SIZE
    max_video_upload_size: int = MAX_VIDEO_UPLOAD_SIZE
    upload_chunk_size: int = 1024 * 1024

    # External media tools
    ffprobe_path: str = "ffprobe"
    ffmpeg_path: str = "ffmpeg"
    probe_timeout: float = 30.0
    faststart_enabled: bool = True
    faststart_timeout: float = 600.0

    # HTTP
    cors_allowed_origins: Tuple[str, ...] = ()
    trusted_proxies: FrozenSet[str] = field(default_factory=frozenset)
    rate_limit_enabled: bool = True
    rate_limit_storage_url: str = "memory://"
    # Format: "count/period" where period is second, minute, hour, day
    rate_limit_upload: str = "30/minute"
    rate_limit_default: str = "200/minute"

    # Logging
    log_level: str = "INFO"
    audit_log_enabled: bool = True
    audit_log_path: Path = Path("./logs/audit.log")

    @property
    def scratch_root(self) -> str:
        """Directory that holds per-request scratch directories."""
        return str(self.scratch_dir) if self.scratch_dir else tempfile.gettempdir()

    @property
    def assets_url_prefix(self) -> str:
        return self.public_base_url.rstrip("/") + "/assets"

    def validate(self) -> "AppConfig":
        """Check cross-field consistency, raising ConfigError on the first problem."""
        if not self.jwt_secret:
            raise ConfigError("TUBELY_JWT_SECRET must be set")
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigError(
                f"Unknown storage backend '{self.storage_backend}'. "
                f"Allowed: {', '.join(sorted(STORAGE_BACKENDS))}"
            )
        if self.storage_backend == "s3" and not self.s3_bucket:
            raise ConfigError("TUBELY_S3_BUCKET is required when TUBELY_STORAGE_BACKEND=s3")
        if self.thumbnail_storage not in THUMBNAIL_STORAGE_MODES:
            raise ConfigError(
                f"Unknown thumbnail storage mode '{self.thumbnail_storage}'. "
                f"Allowed: {', '.join(sorted(THUMBNAIL_STORAGE_MODES))}"
            )
        return self


def load_config(environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Build an AppConfig from TUBELY_* environment variables."""
    env = os.environ if environ is None else environ

    scratch_dir = env.get("TUBELY_SCRATCH_DIR", "")
    port = get_int_env("TUBELY_PORT", 8091, min_val=1, max_val=65535, environ=env)

    return AppConfig(
        database_url=env.get("TUBELY_DATABASE_URL", "sqlite:///./tubely.db"),
        jwt_secret=env.get("TUBELY_JWT_SECRET", ""),
        port=port,
        storage_backend=env.get("TUBELY_STORAGE_BACKEND", "local").strip().lower(),
        assets_root=Path(env.get("TUBELY_ASSETS_ROOT", "./assets")),
        public_base_url=env.get("TUBELY_PUBLIC_BASE_URL", f"http://localhost:{port}"),
        scratch_dir=Path(scratch_dir) if scratch_dir else None,
        s3_bucket=env.get("TUBELY_S3_BUCKET", ""),
        s3_region=env.get("TUBELY_S3_REGION", "us-east-1"),
        s3_endpoint_url=env.get("TUBELY_S3_ENDPOINT_URL") or None,
        s3_cdn_domain=env.get("TUBELY_S3_CDN_DOMAIN", "").strip().rstrip("/"),
        presign_expiry=get_int_env("TUBELY_PRESIGN_EXPIRY", 3600, min_val=1, max_val=604800, environ=env),
        thumbnail_storage=env.get("TUBELY_THUMBNAIL_STORAGE", "backend").strip().lower(),
        max_thumbnail_upload_size=get_int_env(
            "TUBELY_MAX_THUMBNAIL_UPLOAD_SIZE", MAX_THUMBNAIL_UPLOAD_SIZE, min_val=1024, environ=env
        ),
        max_video_upload_size=get_int_env(
            "TUBELY_MAX_VIDEO_UPLOAD_SIZE", MAX_VIDEO_UPLOAD_SIZE, min_val=1024, environ=env
        ),
        upload_chunk_size=get_int_env("TUBELY_UPLOAD_CHUNK_SIZE", 1024 * 1024, min_val=1024, environ=env),
        ffprobe_path=env.get("TUBELY_FFPROBE_PATH", "ffprobe"),
        ffmpeg_path=env.get("TUBELY_FFMPEG_PATH", "ffmpeg"),
        probe_timeout=get_float_env("TUBELY_PROBE_TIMEOUT", 30.0, min_val=1.0, environ=env),
        faststart_enabled=get_bool_env("TUBELY_FASTSTART_ENABLED", True, environ=env),
        faststart_timeout=get_float_env("TUBELY_FASTSTART_TIMEOUT", 600.0, min_val=1.0, environ=env),
        cors_allowed_origins=tuple(_split_csv(env.get("TUBELY_CORS_ORIGINS", ""))),
        trusted_proxies=frozenset(_split_csv(env.get("TUBELY_TRUSTED_PROXIES", ""))),
        rate_limit_enabled=get_bool_env("TUBELY_RATE_LIMIT_ENABLED", True, environ=env),
        rate_limit_storage_url=env.get("TUBELY_RATE_LIMIT_STORAGE_URL", "memory://"),
        rate_limit_upload=env.get("TUBELY_RATE_LIMIT_UPLOAD", "30/minute"),
        rate_limit_default=env.get("TUBELY_RATE_LIMIT_DEFAULT", "200/minute"),
        log_level=env.get("TUBELY_LOG_LEVEL", "INFO").upper(),
        audit_log_enabled=get_bool_env("TUBELY_AUDIT_LOG_ENABLED", True, environ=env),
        audit_log_path=Path(env.get("TUBELY_AUDIT_LOG_PATH", "./logs/audit.log")),
    )
