from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import PipelineConfig

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"
STOPPED = "stopped"
TERMINAL_STATUSES = frozenset({COMPLETED, ERROR, STOPPED})

NORMAL = "normal"
ELEVATED = "elevated"
CRITICAL = "critical"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ImageSize:
    width: int
    height: int

    def to_dict(self) -> dict[str, int]:
        return {"width": self.width, "height": self.height}


@dataclass
class GenerationSettings:
    frame_count: int
    image_size: ImageSize
    formats: list[str]
    quality: dict[str, int]

    @property
    def rotation_increment(self) -> float:
        return 360.0 / self.frame_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "imageCount": self.frame_count,
            "imageSize": self.image_size.to_dict(),
            "formats": list(self.formats),
            "quality": dict(self.quality),
        }


@dataclass
class GenerationRequest:
    model_ids: list[str]
    materials: list[str]
    settings: GenerationSettings

    @classmethod
    def from_payload(cls, payload: dict[str, Any], config: "PipelineConfig") -> "GenerationRequest":
        """Build a request from the camelCase boundary shape, filling config defaults."""
        raw_settings = payload.get("settings") or {}

        materials = payload.get("materials")
        if materials is None:
            materials = list(config.default_materials)

        formats = raw_settings.get("formats")
        if formats is None:
            formats = list(config.default_formats)
        formats = [str(fmt).strip().lower().lstrip(".") for fmt in formats]

        raw_size = raw_settings.get("imageSize") or {}
        default_w, default_h = config.default_image_size
        size = ImageSize(
            width=int(raw_size.get("width", default_w)),
            height=int(raw_size.get("height", default_h)),
        )

        quality = {fmt: config.quality_for(fmt) for fmt in formats}
        for fmt, value in (raw_settings.get("quality") or {}).items():
            quality[str(fmt).strip().lower()] = int(value)

        frame_count = raw_settings.get("imageCount")
        settings = GenerationSettings(
            frame_count=int(frame_count if frame_count is not None else config.default_frame_count),
            image_size=size,
            formats=formats,
            quality=quality,
        )
        return cls(
            model_ids=[str(m).strip() for m in payload.get("modelIds") or []],
            materials=[str(m).strip() for m in materials],
            settings=settings,
        )

    def pairs(self) -> list[tuple[str, str]]:
        return [(model_id, material) for model_id in self.model_ids for material in self.materials]

    def to_dict(self) -> dict[str, Any]:
        return {
            "modelIds": list(self.model_ids),
            "materials": list(self.materials),
            "settings": self.settings.to_dict(),
        }


@dataclass(frozen=True)
class WorkUnit:
    model_id: str
    material_id: str
    frame_index: int
    angle: float


@dataclass
class JobRecord:
    id: str
    request: GenerationRequest
    submitted_at: datetime
    updated_at: datetime
    status: str = PENDING  # pending | processing | completed | error | stopped
    progress: int = 0
    current_model: str | None = None
    current_material: str | None = None
    current_frame: int | None = None
    units_total: int = 0
    units_completed: int = 0
    skipped: list[str] = field(default_factory=list)
    completed_sequences: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    estimated_completion: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "totalUnits": self.units_total,
            "completedUnits": self.units_completed,
            "skipped": list(self.skipped),
            "completedSequences": list(self.completed_sequences),
            "submittedAt": _iso(self.submitted_at),
            "startTime": _iso(self.started_at),
            "estimatedCompletion": _iso(self.estimated_completion),
            "endTime": _iso(self.completed_at),
            "cancelRequested": self.cancel_requested,
            "request": self.request.to_dict(),
        }
        if self.current_model is not None:
            payload["currentModel"] = self.current_model
        if self.current_material is not None:
            payload["currentMaterial"] = self.current_material
        if self.current_frame is not None:
            payload["currentFrame"] = self.current_frame
            payload["totalFrames"] = self.request.settings.frame_count
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ResourceSnapshot:
    memory_rss_mb: float
    memory_percent: float
    disk_free_mb: float
    disk_total_mb: float
    disk_percent: float
    memory_pressure: str
    disk_pressure: str
    taken_at: datetime

    @property
    def is_critical(self) -> bool:
        return CRITICAL in (self.memory_pressure, self.disk_pressure)

    def pressure_details(self) -> dict[str, str]:
        return {"memoryPressure": self.memory_pressure, "diskPressure": self.disk_pressure}

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory": {
                "rssMB": round(self.memory_rss_mb, 1),
                "percent": round(self.memory_percent, 1),
                "pressure": self.memory_pressure,
            },
            "disk": {
                "freeMB": round(self.disk_free_mb, 1),
                "totalMB": round(self.disk_total_mb, 1),
                "percent": round(self.disk_percent, 1),
                "pressure": self.disk_pressure,
            },
            "takenAt": self.taken_at.isoformat(),
        }


@dataclass(frozen=True)
class SchedulerMetrics:
    total_jobs: int
    active_jobs: int
    queue_size: int
    completed_jobs: int
    failed_jobs: int
    stopped_jobs: int
    retry_count: int
    total_processing_seconds: float = 0.0
    average_completion_seconds: float = 0.0
    circuit_breaker_state: str = "closed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalJobs": self.total_jobs,
            "activeJobs": self.active_jobs,
            "queueSize": self.queue_size,
            "completedJobs": self.completed_jobs,
            "failedJobs": self.failed_jobs,
            "stoppedJobs": self.stopped_jobs,
            "retryCount": self.retry_count,
            "totalProcessingTime": round(self.total_processing_seconds, 3),
            "averageCompletionTime": round(self.average_completion_seconds, 3),
            "circuitBreakerState": self.circuit_breaker_state,
        }


@dataclass
class ModelInfo:
    id: str
    name: str
    file_name: str
    size: int
    last_modified: datetime
    has_sequences: bool
    mesh_count: int | None = None
    material_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "fileName": self.file_name,
            "size": self.size,
            "lastModified": self.last_modified.isoformat(),
            "hasSequences": self.has_sequences,
            "meshCount": self.mesh_count,
            "materialCount": self.material_count,
        }


@dataclass
class SequenceInfo:
    id: str
    model_id: str | None
    material_id: str | None
    frame_count: int
    formats: list[str]
    total_size: int
    last_modified: datetime
    complete: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model_id,
            "material": self.material_id,
            "frameCount": self.frame_count,
            "formats": list(self.formats),
            "totalSize": self.total_size,
            "lastModified": self.last_modified.isoformat(),
            "complete": self.complete,
        }
