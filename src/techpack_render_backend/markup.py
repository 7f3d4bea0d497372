"""
Minimal HTML for one planned page.

Each page is a standalone HTML document so that one renderer invocation
produces exactly one printed page. Visual styling is deliberately plain; page
geometry (size, orientation, margins) comes from the render options and the
overlay is painted through CSS.
"""

from __future__ import annotations

import html
from typing import Any, Iterable, List, Optional, Sequence

from .layout import BlockType, PagePlanEntry
from .models import ArticleInfo, RenderOptions
from .overlay import OverlayDescriptor, watermark_css

_BASE_CSS = """
body { font-family: Arial, Helvetica, sans-serif; font-size: 10px; color: #111827; margin: 0; }
h1 { font-size: 18px; margin: 0 0 8px 0; }
h2 { font-size: 14px; margin: 0 0 6px 0; }
table { width: 100%; border-collapse: collapse; }
th, td { border: 1px solid #d1d5db; padding: 3px 5px; text-align: left; vertical-align: top; }
th { background: #f3f4f6; }
.swatch { display: inline-block; width: 14px; height: 14px; border: 1px solid #9ca3af; vertical-align: middle; }
.logo { max-height: 48px; float: right; }
.critical { font-weight: bold; color: #b91c1c; }
"""

_TITLES = {
    BlockType.BOM: "Bill of Materials",
    BlockType.MEASUREMENTS: "Measurement Chart",
    BlockType.HOW_TO_MEASURE: "How to Measure",
    BlockType.COLORWAYS: "Colorways",
    BlockType.NOTES: "Notes",
}


def _e(value: Any) -> str:
    if value is None:
        return ""
    return html.escape(str(value))


def _table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    head = "".join(f"<th>{_e(h)}</th>" for h in headers)
    body = "".join("<tr>" + "".join(f"<td>{_e(cell)}</td>" for cell in row) + "</tr>" for row in rows)
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def _header_section(article: ArticleInfo, logo_data_uri: Optional[str]) -> str:
    logo = f'<img class="logo" src="{logo_data_uri}" alt="logo"/>' if logo_data_uri else ""
    fields = [
        ("Article code", article.article_code),
        ("Version", article.version),
        ("Season", article.season),
        ("Lifecycle stage", article.lifecycle_stage),
        ("Brand", article.brand),
        ("Supplier", article.supplier),
        ("Designer", article.designer),
        ("Category", article.category),
        ("Gender", article.gender),
        ("Collection", article.collection_name),
        ("Fabric", article.fabric_description),
    ]
    rows = [(label, value) for label, value in fields if value]
    description = f"<p>{_e(article.description)}</p>" if article.description else ""
    return f"{logo}<h1>{_e(article.product_name)}</h1>{_table(['Field', 'Value'], rows)}{description}"


def _bom_section(items: Sequence[Any]) -> str:
    headers = ["Part", "Material", "Code", "Placement", "Qty", "UOM", "Supplier", "Color", "Comments"]
    rows = [
        (i.part, i.material_name, i.material_code, i.placement, i.quantity, i.uom, i.supplier, i.color, i.comments)
        for i in items
    ]
    return _table(headers, rows)


def _measurement_section(items: Sequence[Any]) -> str:
    sizes: List[str] = []
    for point in items:
        for size in point.sizes:
            if size not in sizes:
                sizes.append(size)
    head = "".join(f"<th>{_e(h)}</th>" for h in ["POM", "Description", "Tol -", "Tol +", *sizes])
    body = []
    for point in items:
        css = ' class="critical"' if point.critical else ""
        cells = [point.pom_code, point.pom_name, point.tolerance_minus, point.tolerance_plus]
        cells.extend(point.sizes.get(size) for size in sizes)
        body.append(f"<tr{css}>" + "".join(f"<td>{_e(c)}</td>" for c in cells) + "</tr>")
    return f"<table><thead><tr>{head}</tr></thead><tbody>{''.join(body)}</tbody></table>"


def _how_to_measure_section(items: Sequence[Any], image_sources: Sequence[Optional[str]]) -> str:
    parts = []
    for index, entry in enumerate(items):
        title = entry.title or entry.pom_code or f"Step {entry.step_number or index + 1}"
        steps = "".join(f"<li>{_e(step)}</li>" for step in entry.instructions)
        image = ""
        if index < len(image_sources) and image_sources[index]:
            image = f'<img src="{image_sources[index]}" style="max-height: 140px;"/>'
        parts.append(f"<section><h2>{_e(title)}</h2><p>{_e(entry.description)}</p><ol>{steps}</ol>{image}</section>")
    return "".join(parts)


def _colorway_section(items: Sequence[Any]) -> str:
    parts = []
    for colorway in items:
        rows = []
        for part in colorway.parts:
            swatch = f'<span class="swatch" style="background: {_e(part.hex_code)};"></span>' if part.hex_code else ""
            rows.append(
                f"<tr><td>{_e(part.part_name)}</td><td>{swatch} {_e(part.color_name)}</td><td>{_e(part.pantone_code)}</td></tr>"
            )
        parts.append(
            f"<section><h2>{_e(colorway.name)} {_e(colorway.code)}</h2>"
            f"<table><thead><tr><th>Part</th><th>Color</th><th>Pantone</th></tr></thead>"
            f"<tbody>{''.join(rows)}</tbody></table></section>"
        )
    return "".join(parts)


def _notes_section(items: Sequence[Any]) -> str:
    return "".join(f"<section><h2>{_e(note.title)}</h2><div>{_e(note.body)}</div></section>" for note in items)


def page_css(options: RenderOptions) -> str:
    margins = options.margins
    size = f"{options.format.value} {options.orientation.value}"
    return (
        f"@page {{ size: {size}; margin: {margins.top} {margins.right} {margins.bottom} {margins.left}; }}"
        + _BASE_CSS
    )


def build_page_html(
    entry: PagePlanEntry,
    options: RenderOptions,
    overlay: Optional[OverlayDescriptor] = None,
    logo_data_uri: Optional[str] = None,
    image_sources: Sequence[Optional[str]] = (),
) -> str:
    """
    Render the HTML document for one page of a plan.

    Args:
        entry: The page to render
        options: Page geometry and image settings
        overlay: Watermark descriptor painted behind the content
        logo_data_uri: Inline logo, only used on the header page
        image_sources: Per item image sources for how-to-measure pages

    Returns:
        Complete HTML document as a string
    """
    if not options.include_images:
        logo_data_uri = None
        image_sources = ()

    if entry.block_type == BlockType.HEADER:
        content = _header_section(entry.items[0], logo_data_uri)
    elif entry.block_type == BlockType.BOM:
        content = _bom_section(entry.items)
    elif entry.block_type == BlockType.MEASUREMENTS:
        content = _measurement_section(entry.items)
    elif entry.block_type == BlockType.HOW_TO_MEASURE:
        content = _how_to_measure_section(entry.items, image_sources)
    elif entry.block_type == BlockType.COLORWAYS:
        content = _colorway_section(entry.items)
    else:
        content = _notes_section(entry.items)

    title = _TITLES.get(entry.block_type)
    heading = f"<h2>{_e(title)}</h2>" if title else ""
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"/>"
        f"<style>{page_css(options)}\n{watermark_css(overlay)}</style></head>"
        f"<body>{heading}{content}</body></html>"
    )
