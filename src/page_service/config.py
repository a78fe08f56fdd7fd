import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ServiceConfig:
    """Runtime settings. ``from_env`` is the only place environment is read."""

    data_dir: Path = Path("./data").resolve()
    workers: int = 3
    job_timeout_sec: float = 1800.0
    job_retention_sec: float = 3600.0
    ping_interval_sec: float = 30.0
    ping_timeout_sec: float = 60.0
    maintenance_interval_sec: float = 60.0
    max_batch_size: int = 50
    max_batch_concurrency: int = 10
    metrics_window: int = 500
    metrics_horizon_sec: float = 24 * 60 * 60
    subscriber_queue_size: int = 100
    cache_max_entries: int | None = 1000
    max_warming_batch: int = 10
    object_store_url: str | None = None
    public_base_url: str = "/files"
    raster_scale: float = 1.5
    raster_quality: int = 60
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            data_dir=Path(os.getenv("DATA_DIR", "./data")).resolve(),
            workers=int(os.getenv("WORKERS", "3")),
            job_timeout_sec=float(os.getenv("JOB_TIMEOUT_SEC", "1800")),
            job_retention_sec=float(os.getenv("JOB_RETENTION_SEC", "3600")),
            ping_interval_sec=float(os.getenv("PING_INTERVAL_SEC", "30")),
            ping_timeout_sec=float(os.getenv("PING_TIMEOUT_SEC", "60")),
            maintenance_interval_sec=float(os.getenv("MAINTENANCE_INTERVAL_SEC", "60")),
            max_batch_size=int(os.getenv("MAX_BATCH_SIZE", "50")),
            metrics_window=int(os.getenv("METRICS_WINDOW", "500")),
            # 0 disables the bound
            cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "1000")) or None,
            max_warming_batch=int(os.getenv("MAX_WARMING_BATCH", "10")),
            object_store_url=os.getenv("OBJECT_STORE_URL") or None,
            public_base_url=os.getenv("PUBLIC_BASE_URL", "/files").rstrip("/"),
            raster_scale=float(os.getenv("RASTER_SCALE", "1.5")),
            raster_quality=int(os.getenv("RASTER_QUALITY", "60")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    reload: bool = False

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8080")),
            # Enable reload in dev unless explicitly disabled
            reload=_env_bool("RELOAD", "true"),
        )
