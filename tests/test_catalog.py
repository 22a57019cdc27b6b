from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import trimesh

from sequence_pipeline.catalog import Catalog, is_safe_id
from sequence_pipeline.errors import ModelNotFoundError
from sequence_pipeline.sequence_store import SequenceStore


class SafeIdTest(unittest.TestCase):
    def test_accepts_plain_ids(self) -> None:
        for value in ("ring-01", "band_2", "pendant.v2", "14k-gold"):
            self.assertTrue(is_safe_id(value), value)

    def test_rejects_paths_and_blanks(self) -> None:
        for value in ("", "..", "../etc", "a/b", "-lead", "ring..01", "sp ace"):
            self.assertFalse(is_safe_id(value), value)


class CatalogTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.models_dir = root / "models"
        self.store = SequenceStore(root / "sequences")
        self.catalog = Catalog(self.models_dir, self.store, ["platinum", "rose-gold"])
        trimesh.creation.box().export(str(self.models_dir / "ring-01.glb"))
        (self.models_dir / "broken.glb").write_bytes(b"not a model")
        (self.models_dir / "notes.txt").write_text("ignored", encoding="utf-8")

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _complete_sequence(self, model: str, material: str, frames: int = 2) -> None:
        for index in range(frames):
            self.store.write(model, material, index, "webp", b"x")
        self.store.write_manifest(model, material, {"frameCount": frames, "formats": ["webp"]})

    def test_list_models_reports_metadata(self) -> None:
        self._complete_sequence("ring-01", "platinum")

        models = {item.id: item for item in self.catalog.list_models()}

        self.assertEqual(set(models), {"ring-01", "broken"})
        ring = models["ring-01"]
        self.assertEqual(ring.file_name, "ring-01.glb")
        self.assertTrue(ring.has_sequences)
        self.assertEqual(ring.mesh_count, 1)
        self.assertGreater(ring.size, 0)
        self.assertFalse(models["broken"].has_sequences)
        self.assertFalse(models["broken"].mesh_count)

    def test_known_materials_include_generated_ones(self) -> None:
        self._complete_sequence("ring-01", "silver")

        self.assertEqual(self.catalog.known_materials("ring-01"), ["platinum", "rose-gold", "silver"])

    def test_delete_model_cascades_to_its_sequences_only(self) -> None:
        self._complete_sequence("ring-01", "platinum")
        self._complete_sequence("ring-01", "silver")
        self._complete_sequence("broken", "platinum")

        removed = self.catalog.delete_model("ring-01")

        self.assertEqual(sorted(removed), ["ring-01-platinum", "ring-01-silver"])
        self.assertFalse(self.catalog.has_model("ring-01"))
        self.assertTrue(self.store.is_complete("broken", "platinum"))

    def test_delete_unknown_model_raises(self) -> None:
        with self.assertRaises(ModelNotFoundError):
            self.catalog.delete_model("ghost")
        with self.assertRaises(ModelNotFoundError):
            self.catalog.delete_model("../models/ring-01")


if __name__ == "__main__":
    unittest.main()
