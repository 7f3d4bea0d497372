"""
Tests for watermark derivation and page markup.
"""

import pytest
from conftest import sample_snapshot

from techpack_render_backend.layout import BlockType, PageLayoutPlanner
from techpack_render_backend.markup import build_page_html
from techpack_render_backend.models import DocumentSnapshot, RenderOptions
from techpack_render_backend.overlay import (
    PLACEMENT_CORNER,
    PLACEMENT_REPEAT,
    PREDEFINED_WATERMARKS,
    OverlayComposer,
    OverlayDescriptor,
    watermark_css,
)


class TestLifecycleWatermarks:
    """Tests for derive_watermark."""

    @pytest.mark.parametrize(
        "stage,style",
        [
            ("Concept", "draft"),
            ("Development", "draft"),
            ("Sampling", "sample"),
            ("Production", "approved"),
            ("Revision", "revision"),
        ],
    )
    def test_stage_maps_to_predefined_style(self, stage, style):
        composer = OverlayComposer()
        assert composer.derive_watermark(stage) == PREDEFINED_WATERMARKS[style]

    def test_lookup_ignores_case(self):
        composer = OverlayComposer()
        assert composer.derive_watermark("PRODUCTION") == composer.derive_watermark("production")

    @pytest.mark.parametrize("stage", [None, "", "Archived", "Shipped"])
    def test_unmapped_stage_has_no_watermark(self, stage):
        assert OverlayComposer().derive_watermark(stage) is None

    def test_opacity_must_be_within_unit_range(self):
        with pytest.raises(ValueError):
            OverlayDescriptor("X", 1.5, 0, "#000000", PLACEMENT_CORNER)


class TestBrandWatermarks:
    """Tests for derive_brand_watermark."""

    def test_brand_watermark_is_faint_and_tiled(self):
        descriptor = OverlayComposer().derive_brand_watermark("Acme", "LS Apparel")
        assert descriptor.watermark_text == "ACME - LS APPAREL"
        assert descriptor.opacity == 0.05
        assert descriptor.rotation_degrees == -45
        assert descriptor.placement_pattern == PLACEMENT_REPEAT

    @pytest.mark.parametrize(
        "brand,font_size",
        [("Acme", 60), ("Brand1", 50), ("A Very Long Brand Name Indeed", 30)],
    )
    def test_font_size_shrinks_with_text_length(self, brand, font_size):
        assert OverlayComposer().derive_brand_watermark(brand).font_size == font_size


class TestCompose:
    """Tests for the document level overlay."""

    def test_lifecycle_stage_wins_over_brand(self):
        snapshot = DocumentSnapshot.from_payload(sample_snapshot(stage="Production", brand="Acme"))
        descriptor = OverlayComposer().compose(snapshot)
        assert descriptor.watermark_text == "APPROVED"

    def test_brand_used_when_stage_unmapped(self):
        snapshot = DocumentSnapshot.from_payload(sample_snapshot(stage="Archived", brand="Acme"))
        descriptor = OverlayComposer().compose(snapshot)
        assert descriptor.watermark_text == "ACME"

    def test_no_overlay_without_stage_brand_or_logo(self):
        snapshot = DocumentSnapshot.from_payload(sample_snapshot(stage=None))
        assert OverlayComposer().compose(snapshot) is None

    def test_logo_resolved_by_supplier_then_brand(self):
        composer = OverlayComposer({"LS Apparel": "ls.png", "Acme": "acme.png"})

        by_supplier = DocumentSnapshot.from_payload(sample_snapshot(brand="Acme", supplier="ls apparel"))
        by_brand = DocumentSnapshot.from_payload(sample_snapshot(brand="Acme", supplier="Unknown Mill"))

        assert composer.compose(by_supplier).logo_asset_ref == "ls.png"
        assert composer.compose(by_brand).logo_asset_ref == "acme.png"

    def test_default_logo_fallback(self):
        composer = OverlayComposer({}, default_logo="default.png")
        assert composer.resolve_logo("Nobody") == "default.png"
        assert composer.resolve_logo(None) == "default.png"

    def test_logo_only_overlay_paints_nothing(self):
        composer = OverlayComposer({"Acme": "acme.png"})
        snapshot = DocumentSnapshot.from_payload(sample_snapshot(stage=None, supplier="Acme"))

        descriptor = composer.compose(snapshot)

        assert descriptor.logo_asset_ref == "acme.png"
        assert watermark_css(descriptor) == ""


class TestMarkup:
    """Tests for watermark CSS and page HTML."""

    def test_repeat_pattern_uses_svg_tile(self):
        css = watermark_css(PREDEFINED_WATERMARKS["sample"])
        assert "data:image/svg+xml;base64," in css

    def test_centered_pattern_contains_text(self):
        css = watermark_css(PREDEFINED_WATERMARKS["draft"])
        assert '"DRAFT"' in css
        assert "rotate(-30deg)" in css

    def test_page_geometry_follows_options(self):
        plan = PageLayoutPlanner().plan(sample_snapshot())
        options = RenderOptions.parse({"format": "Letter", "orientation": "portrait"})

        page = build_page_html(plan.entries[0], options)

        assert "size: Letter portrait" in page

    def test_content_is_escaped(self):
        plan = PageLayoutPlanner().plan(sample_snapshot(productName="<b>Shirt</b>"))
        page = build_page_html(plan.entries[0], RenderOptions())
        assert "&lt;b&gt;Shirt&lt;/b&gt;" in page
        assert "<b>Shirt</b>" not in page

    def test_images_dropped_when_disabled(self):
        plan = PageLayoutPlanner().plan(sample_snapshot())
        header = plan.entries[0]
        logo = "data:image/jpeg;base64,AAAA"

        with_images = build_page_html(header, RenderOptions(), logo_data_uri=logo)
        without_images = build_page_html(header, RenderOptions.parse({"includeImages": False}), logo_data_uri=logo)

        assert logo in with_images
        assert logo not in without_images

    def test_block_pages_have_titles(self):
        plan = PageLayoutPlanner().plan(sample_snapshot(bom=1, measurements=0, colorways=0))
        bom_page = plan.entries[1]
        assert bom_page.block_type == BlockType.BOM
        assert "Bill of Materials" in build_page_html(bom_page, RenderOptions())
