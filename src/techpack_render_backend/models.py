from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import InvalidOptionsError, InvalidSnapshotError

# Upstream payloads arrive in camelCase; snake_case is accepted as well.
_SNAPSHOT_CONFIG = ConfigDict(
    frozen=True,
    extra="ignore",
    populate_by_name=True,
    alias_generator=to_camel,
)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


# --------------------------------------------------------------------------
# Document Snapshot
# --------------------------------------------------------------------------


class ArticleInfo(BaseModel):
    model_config = _SNAPSHOT_CONFIG

    product_name: str = ""
    article_code: str = ""
    version: str = ""
    season: Optional[str] = None
    lifecycle_stage: Optional[str] = None
    brand: Optional[str] = None
    supplier: Optional[str] = None
    designer: Optional[str] = None
    category: Optional[str] = None
    gender: Optional[str] = None
    collection_name: Optional[str] = None
    fabric_description: Optional[str] = None
    description: Optional[str] = None


class BomItem(BaseModel):
    model_config = _SNAPSHOT_CONFIG

    part: str = ""
    material_name: str = "Unnamed material"
    material_code: Optional[str] = None
    placement: Optional[str] = None
    size: Optional[str] = None
    quantity: Optional[float] = None
    uom: Optional[str] = None
    supplier: Optional[str] = None
    color: Optional[str] = None
    pantone_code: Optional[str] = None
    comments: Optional[str] = None


class MeasurementPoint(BaseModel):
    model_config = _SNAPSHOT_CONFIG

    pom_code: str
    pom_name: str = ""
    tolerance_minus: float = 0.0
    tolerance_plus: float = 0.0
    sizes: Dict[str, Optional[float]] = Field(default_factory=dict)
    critical: bool = False
    notes: Optional[str] = None


class HowToMeasureEntry(BaseModel):
    model_config = _SNAPSHOT_CONFIG

    pom_code: Optional[str] = None
    title: Optional[str] = None
    description: str = ""
    step_number: Optional[int] = None
    instructions: Tuple[str, ...] = ()
    image_ref: Optional[str] = None


class ColorwayPart(BaseModel):
    model_config = _SNAPSHOT_CONFIG

    part_name: str
    color_name: str
    hex_code: Optional[str] = None
    pantone_code: Optional[str] = None


class Colorway(BaseModel):
    model_config = _SNAPSHOT_CONFIG

    name: str
    code: str = ""
    hex_color: Optional[str] = None
    pantone_code: Optional[str] = None
    placement: Optional[str] = None
    parts: Tuple[ColorwayPart, ...] = Field(min_length=1)


class RichTextBlock(BaseModel):
    model_config = _SNAPSHOT_CONFIG

    title: str = ""
    body: str = ""


class DocumentSnapshot(BaseModel):
    """
    Immutable input to one generation run.

    Owned by the persistence layer; the pipeline only reads it. Item order in
    every block is the order the document author entered it in.
    """

    model_config = _SNAPSHOT_CONFIG

    document_id: str = Field(min_length=1)
    content_version: str = Field(min_length=1)
    article: ArticleInfo = Field(default_factory=ArticleInfo)
    bom: Tuple[BomItem, ...] = ()
    measurements: Tuple[MeasurementPoint, ...] = ()
    how_to_measure: Tuple[HowToMeasureEntry, ...] = ()
    colorways: Tuple[Colorway, ...] = ()
    notes: Tuple[RichTextBlock, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> "DocumentSnapshot":
        """
        Parse an upstream payload into a snapshot.

        Raises:
            InvalidSnapshotError: If the payload does not describe a snapshot
        """
        if isinstance(payload, cls):
            return payload
        if not isinstance(payload, Mapping):
            raise InvalidSnapshotError(f"Snapshot payload must be an object, got {type(payload).__name__}")
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
            raise InvalidSnapshotError("Malformed document snapshot", errors=errors) from exc

    def validation_errors(self) -> List[str]:
        """Return the reasons this snapshot cannot be rendered (empty when valid)."""
        errors: List[str] = []
        if not self.article.product_name.strip():
            errors.append("Product name is required")
        if not self.article.article_code.strip():
            errors.append("Article code is required")
        if not self.article.version.strip():
            errors.append("Version is required")
        return errors


# --------------------------------------------------------------------------
# Render options
# --------------------------------------------------------------------------


class PageFormat(str, Enum):
    A4 = "A4"
    LETTER = "Letter"
    LEGAL = "Legal"


class Orientation(str, Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"


class Margins(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    top: str = "10mm"
    bottom: str = "10mm"
    left: str = "8mm"
    right: str = "8mm"


class RenderOptions(BaseModel):
    """
    Recognized render options with their defaults.

    Unrecognized keys are ignored; missing keys take the defaults below.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    format: PageFormat = PageFormat.A4
    orientation: Orientation = Orientation.LANDSCAPE
    include_images: bool = True
    image_quality: int = Field(default=65, ge=0, le=100)
    margins: Margins = Field(default_factory=Margins)

    @classmethod
    def parse(cls, raw: Union[None, str, Mapping[str, Any], "RenderOptions"]) -> "RenderOptions":
        """
        Build options from a JSON string, a mapping or None.

        Raises:
            InvalidOptionsError: If the value is not valid JSON or a field is out of range
        """
        if raw is None or raw == "":
            return cls()
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise InvalidOptionsError(f"Invalid options JSON: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise InvalidOptionsError("Options must be a JSON object")
        try:
            return cls.model_validate({k: v for k, v in raw.items() if v is not None})
        except ValidationError as exc:
            raise InvalidOptionsError(f"Invalid options: {exc.errors()[0]['msg']}") from exc

    def fingerprint(self) -> str:
        """Short stable hash distinguishing artifacts rendered with different options."""
        encoded = self.model_dump_json().encode("utf-8")
        return hashlib.sha1(encoded).hexdigest()[:10]

    @property
    def landscape(self) -> bool:
        return self.orientation == Orientation.LANDSCAPE


# --------------------------------------------------------------------------
# API payloads
# --------------------------------------------------------------------------


class DocumentInfo(BaseModel):
    document_id: str
    content_version: str
    article_code: str
    version: str
    product_name: str
    lifecycle_stage: Optional[str] = None
    estimated_pages: int
    can_generate: bool
    validation_errors: List[str]
    supported_formats: List[str]
    supported_orientations: List[str]


class BulkRequest(BaseModel):
    document_ids: List[str] = Field(min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)
    label: str = ""


class BulkDocumentResult(BaseModel):
    document_id: str
    success: bool
    artifact_ref: Optional[str] = None
    pages: Optional[int] = None
    size: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class BulkSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BulkResult(BaseModel):
    results: List[BulkDocumentResult]
    summary: BulkSummary


class JobSummary(BaseModel):
    id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    document_count: int
    archive_available: bool = False


class JobDetail(JobSummary):
    document_ids: List[str]
    options: Dict[str, Any]
    events: List[JobEvent]
    result: Optional[BulkResult] = None
    download_url: Optional[str] = None
    error: Optional[str] = None


class PoolSlotInfo(BaseModel):
    slot_id: int
    state: str
    consecutive_failures: int
    jobs_completed: int
    current_job: Optional[str] = None


class PoolStatus(BaseModel):
    size: int
    available: int
    busy: int
    quarantined: int
    slots: List[PoolSlotInfo]


# --------------------------------------------------------------------------
# Generated artifacts
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class GeneratedDocument:
    document_id: str
    content_version: str
    filename: str
    payload: bytes
    pages: int
    cached: bool = False
    media_type: str = "application/pdf"

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass(frozen=True)
class PreviewImage:
    document_id: str
    content_version: str
    page_number: int
    payload: bytes
    cached: bool = False
    media_type: str = "image/jpeg"
