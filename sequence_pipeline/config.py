from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_MATERIALS = ("platinum", "white-gold", "yellow-gold", "rose-gold")
DEFAULT_FORMATS = ("avif", "webp", "png")
DEFAULT_QUALITY = {"avif": 60, "webp": 90, "png": 90}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return float(raw)


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    items = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    return items or default


def _env_size(name: str, default: tuple[int, int]) -> tuple[int, int]:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    width, _, height = raw.partition("x")
    return int(width), int(height or width)


@dataclass(frozen=True)
class PipelineConfig:
    models_dir: Path = Path("public/models")
    sequences_dir: Path = Path("public/images/products/3d-sequences")

    default_materials: tuple[str, ...] = DEFAULT_MATERIALS
    default_frame_count: int = 36
    default_image_size: tuple[int, int] = (800, 800)
    default_formats: tuple[str, ...] = DEFAULT_FORMATS
    default_quality: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_QUALITY))

    max_concurrent_jobs: int = 1
    max_queue_size: int = 50
    max_models_per_request: int = 50
    max_frame_count: int = 360
    max_image_dimension: int = 4096
    retry_attempts: int = 2

    # Consecutive failed work units before the breaker opens, and how long it stays open
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 60.0

    # Admission thresholds
    max_memory_mb: int = 2048
    min_free_disk_mb: int = 500
    memory_elevated_percent: float = 85.0
    memory_critical_percent: float = 95.0
    disk_elevated_percent: float = 85.0
    disk_critical_percent: float = 95.0
    snapshot_ttl_seconds: float = 5.0
    temp_file_max_age_seconds: float = 3600.0

    # Job registry housekeeping
    max_retained_jobs: int = 100
    job_retention_hours: int = 24

    generator_name: str = "sequence-pipeline v1.0"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        defaults = cls()
        return cls(
            models_dir=Path(os.getenv("PIPELINE_MODELS_DIR", str(defaults.models_dir))).resolve(),
            sequences_dir=Path(os.getenv("PIPELINE_SEQUENCES_DIR", str(defaults.sequences_dir))).resolve(),
            default_materials=_env_list("PIPELINE_DEFAULT_MATERIALS", defaults.default_materials),
            default_frame_count=_env_int("PIPELINE_FRAME_COUNT", defaults.default_frame_count),
            default_image_size=_env_size("PIPELINE_IMAGE_SIZE", defaults.default_image_size),
            default_formats=_env_list("PIPELINE_FORMATS", defaults.default_formats),
            max_concurrent_jobs=max(1, _env_int("PIPELINE_MAX_CONCURRENT_JOBS", defaults.max_concurrent_jobs)),
            max_queue_size=max(1, _env_int("PIPELINE_MAX_QUEUE_SIZE", defaults.max_queue_size)),
            max_models_per_request=_env_int("PIPELINE_MAX_MODELS", defaults.max_models_per_request),
            max_frame_count=_env_int("PIPELINE_MAX_FRAMES", defaults.max_frame_count),
            max_image_dimension=_env_int("PIPELINE_MAX_IMAGE_DIMENSION", defaults.max_image_dimension),
            retry_attempts=max(0, _env_int("PIPELINE_RETRY_ATTEMPTS", defaults.retry_attempts)),
            circuit_failure_threshold=max(1, _env_int("PIPELINE_CIRCUIT_THRESHOLD", defaults.circuit_failure_threshold)),
            circuit_reset_seconds=_env_float("PIPELINE_CIRCUIT_RESET_SECONDS", defaults.circuit_reset_seconds),
            max_memory_mb=_env_int("PIPELINE_MAX_MEMORY_MB", defaults.max_memory_mb),
            min_free_disk_mb=_env_int("PIPELINE_MIN_FREE_DISK_MB", defaults.min_free_disk_mb),
            snapshot_ttl_seconds=_env_float("PIPELINE_SNAPSHOT_TTL", defaults.snapshot_ttl_seconds),
            max_retained_jobs=max(1, _env_int("PIPELINE_MAX_RETAINED_JOBS", defaults.max_retained_jobs)),
            job_retention_hours=max(1, _env_int("PIPELINE_JOB_RETENTION_HOURS", defaults.job_retention_hours)),
        )

    def with_overrides(self, **kwargs) -> "PipelineConfig":
        return replace(self, **kwargs)

    def quality_for(self, fmt: str) -> int:
        return int(self.default_quality.get(fmt, 90))
