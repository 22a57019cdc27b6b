from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .models import SequenceInfo

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


class SequenceStore:
    """On-disk layout: {root}/{model}-{material}/{frame}.{format} plus manifest.json."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def sequence_id(model_id: str, material_id: str) -> str:
        return f"{model_id}-{material_id}"

    def sequence_dir(self, model_id: str, material_id: str) -> Path:
        return self.root / self.sequence_id(model_id, material_id)

    def frame_path(self, model_id: str, material_id: str, frame_index: int, fmt: str) -> Path:
        return self.sequence_dir(model_id, material_id) / f"{frame_index}.{fmt}"

    def manifest_path(self, model_id: str, material_id: str) -> Path:
        return self.sequence_dir(model_id, material_id) / MANIFEST_NAME

    def exists(self, model_id: str, material_id: str, frame_count: int, formats: Iterable[str]) -> bool:
        """True only when every frame of every format is present on disk."""
        folder = self.sequence_dir(model_id, material_id)
        if frame_count <= 0 or not folder.is_dir():
            return False
        present = {p.name for p in folder.iterdir() if p.is_file()}
        for fmt in formats:
            for index in range(frame_count):
                if f"{index}.{fmt}" not in present:
                    return False
        return True

    def write(self, model_id: str, material_id: str, frame_index: int, fmt: str, data: bytes) -> Path:
        target = self.frame_path(model_id, material_id, frame_index, fmt)
        self._atomic_write(target, data)
        return target

    def write_manifest(self, model_id: str, material_id: str, metadata: dict[str, Any]) -> Path:
        manifest = {
            "model": model_id,
            "material": material_id,
            **metadata,
        }
        manifest.setdefault("generatedAt", datetime.now(timezone.utc).isoformat())
        target = self.manifest_path(model_id, material_id)
        self._atomic_write(target, json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8"))
        return target

    def read_manifest(self, model_id: str, material_id: str) -> dict[str, Any] | None:
        return self._read_manifest_file(self.manifest_path(model_id, material_id))

    def is_complete(self, model_id: str, material_id: str) -> bool:
        """Completeness judged against what the sequence's own manifest promises."""
        manifest = self.read_manifest(model_id, material_id)
        if not manifest:
            return False
        try:
            frame_count = int(manifest.get("frameCount", 0))
        except (TypeError, ValueError):
            return False
        formats = manifest.get("formats") or []
        return bool(formats) and self.exists(model_id, material_id, frame_count, formats)

    def delete(self, model_id: str, material_id: str) -> bool:
        folder = self.sequence_dir(model_id, material_id).resolve()

        # Only direct children of the root may be removed.
        if folder.parent != self.root or not folder.is_dir():
            return False

        shutil.rmtree(folder)
        logger.info("Deleted sequence %s", folder.name)
        return True

    def materials_for_model(self, model_id: str) -> list[str]:
        found = []
        prefix = f"{model_id}-"
        for folder in sorted(self.root.iterdir()):
            if not folder.is_dir() or not folder.name.startswith(prefix):
                continue
            manifest = self._read_manifest_file(folder / MANIFEST_NAME)
            if manifest and manifest.get("model") == model_id and manifest.get("material"):
                found.append(str(manifest["material"]))
        return found

    def list_sequences(self) -> list[SequenceInfo]:
        sequences = []
        for folder in sorted(self.root.iterdir()):
            if not folder.is_dir():
                continue

            frames: set[int] = set()
            formats: set[str] = set()
            total_size = 0
            for file in folder.iterdir():
                stem, _, ext = file.name.partition(".")
                if not file.is_file() or not stem.isdigit() or not ext:
                    continue
                frames.add(int(stem))
                formats.add(ext)
                total_size += file.stat().st_size

            manifest = self._read_manifest_file(folder / MANIFEST_NAME) or {}
            model_id = manifest.get("model")
            material_id = manifest.get("material")
            complete = bool(model_id and material_id and self.is_complete(model_id, material_id))

            sequences.append(
                SequenceInfo(
                    id=folder.name,
                    model_id=model_id,
                    material_id=material_id,
                    frame_count=len(frames),
                    formats=sorted(formats),
                    total_size=total_size,
                    last_modified=datetime.fromtimestamp(folder.stat().st_mtime, tz=timezone.utc),
                    complete=complete,
                )
            )
        return sequences

    @staticmethod
    def _read_manifest_file(path: Path) -> dict[str, Any] | None:
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Unreadable manifest %s", path)
            return None
        return payload if isinstance(payload, dict) else None

    @staticmethod
    def _atomic_write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
