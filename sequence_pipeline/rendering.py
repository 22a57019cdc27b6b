from __future__ import annotations

import io
import logging
import math
import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import numpy as np
import PIL
import trimesh
from PIL import Image, ImageDraw

from .errors import TransientWorkUnitError
from .models import ImageSize

logger = logging.getLogger(__name__)


class Renderer(Protocol):
    def render(
        self,
        model_id: str,
        material_id: str,
        frame_index: int,
        size: ImageSize,
        *,
        angle: float,
    ) -> Image.Image: ...


class Encoder(Protocol):
    def encode(self, image: Image.Image, fmt: str, quality: int) -> bytes: ...

    def supports(self, fmt: str) -> bool: ...


@dataclass(frozen=True)
class MaterialLook:
    color: tuple[float, float, float]
    metalness: float
    roughness: float


MATERIAL_LOOKS: dict[str, MaterialLook] = {
    "platinum": MaterialLook((0.95, 0.95, 0.95), 1.0, 0.10),
    "white-gold": MaterialLook((0.93, 0.93, 0.93), 1.0, 0.15),
    "yellow-gold": MaterialLook((1.0, 0.84, 0.0), 1.0, 0.12),
    "rose-gold": MaterialLook((0.95, 0.76, 0.76), 1.0, 0.13),
    "14k-gold": MaterialLook((0.85, 0.70, 0.0), 0.9, 0.18),
}
FALLBACK_LOOK = MaterialLook((0.8, 0.8, 0.8), 0.0, 0.5)


def material_look(material_id: str) -> MaterialLook:
    key = material_id.strip().lower()
    if key in MATERIAL_LOOKS:
        return MATERIAL_LOOKS[key]
    if key.startswith("18k-") and key[4:] in MATERIAL_LOOKS:
        return MATERIAL_LOOKS[key[4:]]
    return FALLBACK_LOOK


@dataclass(frozen=True)
class _PreparedMesh:
    vertices: np.ndarray  # centered, unit radius
    faces: np.ndarray


def _rotation(angle_deg: float, elevation_deg: float) -> np.ndarray:
    theta = math.radians(angle_deg)
    phi = math.radians(elevation_deg)
    ry = np.array(
        [
            [math.cos(theta), 0.0, math.sin(theta)],
            [0.0, 1.0, 0.0],
            [-math.sin(theta), 0.0, math.cos(theta)],
        ]
    )
    rx = np.array(
        [
            [1.0, 0.0, 0.0],
            [0.0, math.cos(phi), -math.sin(phi)],
            [0.0, math.sin(phi), math.cos(phi)],
        ]
    )
    return rx @ ry


class TrimeshRenderer:
    """Flat-shaded turntable renderer for GLB models.

    The model spins about its up (Y) axis; the camera looks down -Z with a
    fixed elevation. Faces are painted back to front with Pillow.
    """

    def __init__(self, models_dir: Path, elevation_deg: float = 20.0, cache_size: int = 4):
        self.models_dir = Path(models_dir)
        self.elevation_deg = elevation_deg
        self.cache_size = max(1, cache_size)
        self._lock = threading.Lock()
        self._cache: OrderedDict[str, _PreparedMesh] = OrderedDict()

    def render(
        self,
        model_id: str,
        material_id: str,
        frame_index: int,
        size: ImageSize,
        *,
        angle: float,
    ) -> Image.Image:
        mesh = self._load(model_id)
        look = material_look(material_id)

        vertices = mesh.vertices @ _rotation(angle, self.elevation_deg).T
        triangles = vertices[mesh.faces]

        normals = np.cross(triangles[:, 1] - triangles[:, 0], triangles[:, 2] - triangles[:, 0])
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        normals = normals / np.where(lengths == 0, 1.0, lengths)
        # Double-sided: shade every face as if it faces the camera.
        normals[normals[:, 2] < 0] *= -1

        light = np.array([0.4, 0.6, 1.0])
        light /= np.linalg.norm(light)
        half = light + np.array([0.0, 0.0, 1.0])
        half /= np.linalg.norm(half)

        diffuse = np.clip(normals @ light, 0.0, 1.0)
        shininess = 2.0 / max(look.roughness, 0.05) ** 2
        specular = np.clip(normals @ half, 0.0, 1.0) ** shininess

        base = np.array(look.color)
        shade = (0.25 + 0.75 * diffuse)[:, None] * base + (0.6 * look.metalness * specular)[:, None]
        colors = (np.clip(shade, 0.0, 1.0) * 255).astype(np.uint8)

        scale = min(size.width, size.height) * 0.45
        screen_x = size.width / 2.0 + triangles[:, :, 0] * scale
        screen_y = size.height / 2.0 - triangles[:, :, 1] * scale
        order = np.argsort(triangles[:, :, 2].mean(axis=1))

        image = Image.new("RGBA", (size.width, size.height), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        for idx in order:
            points = list(zip(screen_x[idx].tolist(), screen_y[idx].tolist()))
            r, g, b = colors[idx].tolist()
            draw.polygon(points, fill=(r, g, b, 255))
        return image

    def _load(self, model_id: str) -> _PreparedMesh:
        with self._lock:
            cached = self._cache.get(model_id)
            if cached is not None:
                self._cache.move_to_end(model_id)
                return cached

        path = self.models_dir / f"{model_id}.glb"
        if not path.is_file():
            raise FileNotFoundError(f"Model file not found: {path}")

        try:
            loaded = trimesh.load(str(path), force="mesh", process=False)
        except OSError as exc:
            raise TransientWorkUnitError(f"Could not read {path.name}: {exc}") from exc

        vertices = np.asarray(loaded.vertices, dtype=np.float64)
        faces = np.asarray(loaded.faces, dtype=np.int64)
        if len(faces) == 0:
            raise ValueError(f"Model {model_id} has no renderable faces")

        vertices = vertices - (vertices.max(axis=0) + vertices.min(axis=0)) / 2.0
        radius = float(np.linalg.norm(vertices, axis=1).max()) or 1.0
        prepared = _PreparedMesh(vertices=vertices / radius, faces=faces)
        logger.debug("Loaded %s: %d vertices, %d faces", model_id, len(vertices), len(faces))

        with self._lock:
            self._cache[model_id] = prepared
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return prepared

    def forget(self, model_id: str) -> None:
        with self._lock:
            self._cache.pop(model_id, None)


_PIL_FORMATS = {
    "png": "PNG",
    "webp": "WEBP",
    "avif": "AVIF",
    "jpg": "JPEG",
    "jpeg": "JPEG",
}


def supported_formats() -> list[str]:
    Image.init()
    return [fmt for fmt, pil_format in _PIL_FORMATS.items() if pil_format in Image.SAVE]


class PillowEncoder:
    def __init__(self, png_compress_level: int = 6):
        self.png_compress_level = png_compress_level

    def supports(self, fmt: str) -> bool:
        return fmt.lower() in supported_formats()

    def encode(self, image: Image.Image, fmt: str, quality: int) -> bytes:
        pil_format = _PIL_FORMATS.get(fmt.lower())
        if pil_format is None or not self.supports(fmt):
            raise ValueError(f"Unsupported output format: {fmt}")

        quality = max(1, min(int(quality), 100))
        kwargs: dict = {}
        if pil_format == "PNG":
            kwargs["compress_level"] = self.png_compress_level
        elif pil_format == "JPEG":
            if image.mode != "RGB":
                background = Image.new("RGB", image.size, (255, 255, 255))
                if image.mode == "RGBA":
                    background.paste(image, mask=image.getchannel("A"))
                else:
                    background.paste(image.convert("RGB"))
                image = background
            kwargs["quality"] = quality
        elif pil_format == "WEBP":
            kwargs.update(quality=quality, method=4)
        else:
            kwargs["quality"] = quality

        buffer = io.BytesIO()
        image.save(buffer, format=pil_format, **kwargs)
        return buffer.getvalue()


def get_diagnostics() -> dict:
    return {
        "trimesh": {"version": getattr(trimesh, "__version__", "unknown")},
        "numpy": {"version": np.__version__},
        "pillow": {"version": PIL.__version__, "formats": supported_formats()},
    }
