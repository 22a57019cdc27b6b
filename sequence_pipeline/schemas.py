from __future__ import annotations

from typing import Any, Iterable

from pydantic import BaseModel, ValidationError

from .errors import AdmissionError


class ImageSizeBody(BaseModel):
    width: int
    height: int


class SettingsBody(BaseModel):
    imageCount: int | None = None
    imageSize: ImageSizeBody | None = None
    formats: list[str] | None = None
    quality: dict[str, int] | None = None


class GenerateBody(BaseModel):
    modelIds: list[str]
    materials: list[str] | None = None
    settings: SettingsBody | None = None


def error_details(errors: Iterable[dict[str, Any]]) -> dict[str, Any]:
    return {"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in errors]}


def parse_generate_payload(payload: Any) -> dict[str, Any]:
    """Check the shape of a camelCase generate payload; returns it with unset keys dropped."""
    try:
        body = GenerateBody.model_validate(payload)
    except ValidationError as exc:
        raise AdmissionError("Malformed request", details=error_details(exc.errors()), status_code=400) from exc
    return body.model_dump(exclude_none=True)
