from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from pygltflib import GLTF2

from .errors import ModelNotFoundError
from .models import ModelInfo
from .sequence_store import SequenceStore

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".glb"
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def is_safe_id(value: str) -> bool:
    return bool(value) and bool(_SAFE_ID.match(value)) and ".." not in value


def _gltf_counts(path: Path) -> tuple[int | None, int | None]:
    try:
        gltf = GLTF2().load(str(path))
    except Exception as exc:
        logger.warning("Could not inspect %s: %s", path.name, exc)
        return None, None
    if gltf is None:
        return None, None
    return len(gltf.meshes), len(gltf.materials)


class Catalog:
    """Read-only view over the model library and the sequences generated from it."""

    def __init__(self, models_dir: Path, store: SequenceStore, default_materials: Iterable[str]):
        self.models_dir = Path(models_dir).resolve()
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.store = store
        self.default_materials = list(default_materials)

    def model_path(self, model_id: str) -> Path:
        return self.models_dir / f"{model_id}{MODEL_SUFFIX}"

    def has_model(self, model_id: str) -> bool:
        return is_safe_id(model_id) and self.model_path(model_id).is_file()

    def known_materials(self, model_id: str) -> list[str]:
        materials = list(self.default_materials)
        for material in self.store.materials_for_model(model_id):
            if material not in materials:
                materials.append(material)
        return materials

    def has_sequences(self, model_id: str) -> bool:
        return any(self.store.is_complete(model_id, material) for material in self.known_materials(model_id))

    def list_models(self) -> list[ModelInfo]:
        models = []
        for path in sorted(self.models_dir.glob(f"*{MODEL_SUFFIX}")):
            if not path.is_file():
                continue
            model_id = path.stem
            stat = path.stat()
            mesh_count, material_count = _gltf_counts(path)
            models.append(
                ModelInfo(
                    id=model_id,
                    name=model_id.replace("_", " "),
                    file_name=path.name,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    has_sequences=self.has_sequences(model_id),
                    mesh_count=mesh_count,
                    material_count=material_count,
                )
            )
        return models

    def delete_model(self, model_id: str) -> list[str]:
        """Remove a model file and every sequence generated from it."""
        if not self.has_model(model_id):
            raise ModelNotFoundError(model_id)

        materials = self.known_materials(model_id)
        self.model_path(model_id).unlink()

        removed = []
        for material in materials:
            if self.store.delete(model_id, material):
                removed.append(self.store.sequence_id(model_id, material))
        logger.info("Deleted model %s and %d sequences", model_id, len(removed))
        return removed
