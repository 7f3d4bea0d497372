"""
Watermark and logo overlays.

An OverlayDescriptor is a declarative description of what gets painted over
every rendered page: a watermark (text, opacity, rotation, colour, placement
pattern) and an optional logo reference. Descriptors are derived either from
the document's lifecycle stage or from its brand/supplier identity; both
derivations are deterministic table lookups with no side effects.
"""

from __future__ import annotations

import base64
import html
from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional

from .models import DocumentSnapshot

PLACEMENT_CENTER = "center"
PLACEMENT_DIAGONAL = "diagonal"
PLACEMENT_CORNER = "corner"
PLACEMENT_REPEAT = "repeat"

BRAND_FONT_MIN = 30
BRAND_FONT_MAX = 60


@dataclass(frozen=True)
class OverlayDescriptor:
    watermark_text: Optional[str]
    opacity: float
    rotation_degrees: float
    color_hex: str
    placement_pattern: str
    font_size: float = 60
    logo_asset_ref: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.opacity <= 1.0:
            raise ValueError(f"opacity must be within [0, 1], got {self.opacity}")


PREDEFINED_WATERMARKS: Dict[str, OverlayDescriptor] = {
    "confidential": OverlayDescriptor("CONFIDENTIAL", 0.1, -45, "#dc2626", PLACEMENT_DIAGONAL, 80),
    "draft": OverlayDescriptor("DRAFT", 0.15, -30, "#f59e0b", PLACEMENT_CENTER, 100),
    "sample": OverlayDescriptor("SAMPLE", 0.08, 45, "#059669", PLACEMENT_REPEAT, 60),
    "internal": OverlayDescriptor("INTERNAL USE ONLY", 0.12, 0, "#6366f1", PLACEMENT_CORNER, 40),
    "approved": OverlayDescriptor("APPROVED", 0.1, -45, "#16a34a", PLACEMENT_DIAGONAL, 70),
    "revision": OverlayDescriptor("UNDER REVISION", 0.15, -30, "#ea580c", PLACEMENT_CENTER, 50),
}

LIFECYCLE_WATERMARKS: Dict[str, str] = {
    "concept": "draft",
    "development": "draft",
    "sampling": "sample",
    "production": "approved",
    "revision": "revision",
}


class OverlayComposer:
    """
    Derives overlay descriptors for a document.

    Args:
        logos: Brand or supplier name to logo asset reference
        default_logo: Reference used when no name matches (None disables it)
    """

    def __init__(self, logos: Optional[Mapping[str, str]] = None, default_logo: Optional[str] = None) -> None:
        self._logos = {name.strip().lower(): ref for name, ref in (logos or {}).items()}
        self.default_logo = default_logo

    def derive_watermark(self, lifecycle_stage: Optional[str]) -> Optional[OverlayDescriptor]:
        """Watermark for a lifecycle stage, or None when the stage is not mapped."""
        if not lifecycle_stage:
            return None
        style = LIFECYCLE_WATERMARKS.get(lifecycle_stage.strip().lower())
        if style is None:
            return None
        return PREDEFINED_WATERMARKS[style]

    def derive_brand_watermark(self, brand: str, supplier: Optional[str] = None) -> OverlayDescriptor:
        """
        Low-opacity tiled watermark naming the brand (and supplier).

        The font size shrinks as the text grows, clamped to a readable range.
        """
        text = f"{brand} - {supplier}" if supplier else brand
        font_size = max(BRAND_FONT_MIN, min(BRAND_FONT_MAX, 300 / max(len(text), 1)))
        return OverlayDescriptor(
            watermark_text=text.upper(),
            opacity=0.05,
            rotation_degrees=-45,
            color_hex="#64748b",
            placement_pattern=PLACEMENT_REPEAT,
            font_size=font_size,
        )

    def resolve_logo(self, brand_or_supplier: Optional[str]) -> Optional[str]:
        if brand_or_supplier:
            ref = self._logos.get(brand_or_supplier.strip().lower())
            if ref:
                return ref
        return self.default_logo

    def compose(self, snapshot: DocumentSnapshot) -> Optional[OverlayDescriptor]:
        """
        Overlay for a whole document.

        The lifecycle stage wins; a document whose stage has no watermark
        falls back to the brand watermark when a brand is known. The logo is
        looked up by supplier first, then by brand.
        """
        article = snapshot.article
        descriptor = self.derive_watermark(article.lifecycle_stage)
        if descriptor is None and article.brand:
            descriptor = self.derive_brand_watermark(article.brand, article.supplier)

        logo = self.resolve_logo(article.supplier) or self.resolve_logo(article.brand)
        if descriptor is None:
            if logo is None:
                return None
            descriptor = OverlayDescriptor(None, 0.0, 0, "#000000", PLACEMENT_CENTER, 0)
        return replace(descriptor, logo_asset_ref=logo)


def watermark_css(descriptor: Optional[OverlayDescriptor]) -> str:
    """CSS painting the watermark of a descriptor behind the page content."""
    if descriptor is None or not descriptor.watermark_text:
        return ""

    text = descriptor.watermark_text.replace("\\", "\\\\").replace('"', '\\"')
    rotation = descriptor.rotation_degrees
    opacity = descriptor.opacity
    color = descriptor.color_hex
    size = descriptor.font_size
    common = "pointer-events: none; user-select: none; font-family: Arial, sans-serif; font-weight: bold;"

    if descriptor.placement_pattern == PLACEMENT_CORNER:
        return (
            f'body::before {{ content: "{text}"; position: fixed; bottom: 20px; right: 20px; '
            f"font-size: {size * 0.5}px; color: {color}; opacity: {opacity}; z-index: -1; {common} }}"
        )

    if descriptor.placement_pattern == PLACEMENT_REPEAT:
        spacing = size * 3
        svg = (
            f'<svg width="{spacing}" height="{spacing}" xmlns="http://www.w3.org/2000/svg">'
            f'<text x="50%" y="50%" font-family="Arial" font-size="{size * 0.3}" font-weight="bold" '
            f'fill="{color}" opacity="{opacity}" text-anchor="middle" dominant-baseline="middle" '
            f'transform="rotate({rotation} {spacing / 2} {spacing / 2})">{html.escape(descriptor.watermark_text)}</text></svg>'
        )
        encoded = base64.b64encode(svg.encode("utf-8")).decode("ascii")
        return (
            "body::before { content: \"\"; position: fixed; top: 0; left: 0; width: 100%; height: 100%; "
            f"background-image: url(\"data:image/svg+xml;base64,{encoded}\"); background-repeat: repeat; "
            "z-index: -1; pointer-events: none; }"
        )

    centered = (
        f'body::after {{ content: "{text}"; position: fixed; top: 50%; left: 50%; '
        f"transform: translate(-50%, -50%) rotate({rotation}deg); font-size: {size}px; color: {color}; "
        f"opacity: {opacity}; z-index: -1; white-space: nowrap; {common} }}"
    )
    if descriptor.placement_pattern == PLACEMENT_DIAGONAL:
        stripes = (
            "body::before { content: \"\"; position: fixed; top: 0; left: 0; width: 100%; height: 100%; "
            f"background-image: repeating-linear-gradient({rotation}deg, transparent, transparent 100px, "
            f"{color} 100px, {color} 101px); opacity: {opacity * 0.3}; z-index: -2; pointer-events: none; }}"
        )
        return stripes + "\n" + centered
    return centered
