"""
Bundled generation engine: layered PSD dieline for a folding carton.

Geometry (all values converted from cm to pixels at the requested DPI):

    X = length, Y = height, Z = width
    A = left/right bleed, B = top/bottom bleed, C = inner bleed

    canvas width  = 2X + 2Z + 2A
    canvas height = max(Y + 2Z + 2B - 4C, B + 2Z + Y)

The body row holds the left side (with glue flap), front, right side and
back panels; the top flap sits above the front panel and the bottom flap
below the back panel. Each panel is its own named layer, painted in its own
shade so the fold lines are visible when the file is opened.

Artwork is laid over the panels as further named layers:

    front panel  BrandLogo_Placeholder, ProductName_TXT, SellingPoint_<n>,
                 CapacityInfo_Front
    back panel   INGREDIENTS_TXT, DIRECTIONS_TXT, WARNINGS_TXT,
                 MANUFACTURER_TXT, MANUFACTURER_ADD_TXT, MADE_IN_TXT,
                 CapacityInfoBack, Barcode_Placeholder

Text is rasterized with Pillow. The barcode and logo are drawn as labelled
placeholder boxes at their final position and size, ready to be replaced
with the real artwork.

The output is a version 1 PSD with a layer section plus the flattened
composite image, all channels PackBits (RLE) compressed, carrying a
resolution resource so Photoshop opens it at the right physical size.
"""

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from functools import lru_cache
from itertools import groupby
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from PIL import Image, ImageDraw, ImageFont

from .models import Dimensions, GenerationRequest, ImageRef, TextAssets
from .progress import ProgressCallback

logger = logging.getLogger(__name__)

PSD_MAX_SIDE = 30000
CM_PER_INCH = 2.54

# Layout constants below are pixels at this density; they scale with the DPI
BASE_DPI = 300

WHITE = 255
INK = 0
PLACEHOLDER_FILL = 232
SHADES: Dict[str, int] = {
    "left": 236,
    "front": 246,
    "right": 236,
    "back": 246,
    "top": 224,
    "bottom": 224,
}

BARCODE_MAX_CM = (10.0, 5.0)
LOGO_MAX_CM = (8.0, 4.0)

Span = Tuple[int, int]  # (value, run length)
Plane = Union[int, Image.Image]


@dataclass(frozen=True)
class Rect:
    name: str
    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height


@dataclass(frozen=True)
class BoxMetrics:
    X: int
    Y: int
    Z: int
    A: int
    B: int
    C: int


@dataclass(frozen=True)
class DielineLayout:
    width: int
    height: int
    panels: Tuple[Rect, ...]
    metrics: Optional[BoxMetrics] = None


@dataclass(frozen=True)
class Layer:
    """
    One artwork layer.

    ``gray`` and ``alpha`` are either a constant value or an ``L`` mode image
    the size of ``rect``. Gray 0 is full ink, 255 is paper.
    """

    rect: Rect
    gray: Plane
    alpha: Plane = WHITE

    @property
    def name(self) -> str:
        return self.rect.name


def cm_to_pixels(cm: float, dpi: int) -> int:
    return int(round(cm / CM_PER_INCH * dpi))


def pt_to_pixels(pt: float, dpi: int) -> int:
    return max(1, int(round(pt * dpi / 72)))


def _scaled(px: int, dpi: int) -> int:
    return max(1, int(round(px * dpi / BASE_DPI)))


def compute_layout(dim: Dimensions, dpi: int = 300) -> DielineLayout:
    X = cm_to_pixels(dim.length, dpi)
    Y = cm_to_pixels(dim.height, dpi)
    Z = cm_to_pixels(dim.width, dpi)
    A = cm_to_pixels(dim.bleed_left_right, dpi)
    B = cm_to_pixels(dim.bleed_top_bottom, dpi)
    C = cm_to_pixels(dim.inner_bleed, dpi)

    width = 2 * X + 2 * Z + 2 * A
    height = max(Y + 2 * Z + 2 * B - 4 * C, B + 2 * Z + Y)

    body_top = max(0, B + Z - 2 * C)
    body_height = Y + 4 * C
    panels = (
        Rect("left", 0, body_top, A + Z, body_height),
        Rect("front", A + Z, body_top, X, body_height),
        Rect("right", A + Z + X, body_top, Z, body_height),
        Rect("back", A + 2 * Z + X, body_top, X + A, body_height),
        Rect("top", A + Z, B, X, Z),
        Rect("bottom", A + 2 * Z + X, B + Z + Y, X, Z),
    )
    return DielineLayout(width=width, height=height, panels=panels, metrics=BoxMetrics(X, Y, Z, A, B, C))


def check_canvas(layout: DielineLayout) -> None:
    if layout.width <= 0 or layout.height <= 0:
        raise ValueError("Canvas must have a positive size")
    if layout.width > PSD_MAX_SIDE or layout.height > PSD_MAX_SIDE:
        raise ValueError(
            f"Canvas {layout.width}x{layout.height}px exceeds the PSD limit of {PSD_MAX_SIDE}px per side"
        )


def _intersection(a: Rect, b: Rect) -> Optional[Rect]:
    left, top = max(a.left, b.left), max(a.top, b.top)
    right, bottom = min(a.right, b.right), min(a.bottom, b.bottom)
    if right <= left or bottom <= top:
        return None
    return Rect(a.name, left, top, right - left, bottom - top)


def _clip(rect: Rect, layout: DielineLayout) -> Optional[Rect]:
    return _intersection(rect, Rect(rect.name, 0, 0, layout.width, layout.height))


# ----------------------------------------------------------------------
# Text and placeholder rendering
# ----------------------------------------------------------------------


@lru_cache(maxsize=32)
def _font(size: int, font_path: Optional[str] = None) -> ImageFont.FreeTypeFont:
    if font_path:
        return ImageFont.truetype(font_path, size)
    return ImageFont.load_default(size=size)


def wrap_text(text: str, font: ImageFont.FreeTypeFont, width: int) -> List[str]:
    """
    Greedy line wrapping by measured width.

    Breaks at the last space when there is one, otherwise between characters,
    so scripts written without spaces wrap too.
    """
    lines: List[str] = []
    for paragraph in text.splitlines():
        line = ""
        for ch in paragraph:
            if line and font.getlength(line + ch) > width:
                if ch.isspace():
                    lines.append(line.rstrip())
                    line = ""
                    continue
                head, sep, tail = line.rpartition(" ")
                if sep and head:
                    lines.append(head)
                    line = (tail + ch).lstrip()
                else:
                    lines.append(line)
                    line = ch.lstrip()
            else:
                line += ch
        lines.append(line.rstrip())
    return lines


def text_layer(
    rect: Optional[Rect],
    text: str,
    size_px: int,
    font_path: Optional[str] = None,
) -> Optional[Layer]:
    if rect is None or not text.strip():
        return None
    font = _font(size_px, font_path)
    mask = Image.new("L", (rect.width, rect.height), 0)
    draw = ImageDraw.Draw(mask)
    line_height = max(1, int(round(size_px * 1.2)))
    y = 0
    for line in wrap_text(text.strip(), font, rect.width):
        if y > 0 and y + line_height > rect.height:
            break
        draw.text((0, y), line, fill=WHITE, font=font)
        y += line_height
    return Layer(rect, gray=INK, alpha=mask)


def placeholder_layer(
    rect: Optional[Rect],
    labels: Sequence[str],
    size_px: int,
    stroke: int,
    font_path: Optional[str] = None,
) -> Optional[Layer]:
    if rect is None:
        return None
    image = Image.new("L", (rect.width, rect.height), PLACEHOLDER_FILL)
    draw = ImageDraw.Draw(image)
    draw.rectangle((0, 0, rect.width - 1, rect.height - 1), outline=INK, width=stroke)

    font = _font(size_px, font_path)
    line_height = max(1, int(round(size_px * 1.2)))
    lines = [wrap_text(label, font, max(1, rect.width - 2 * stroke))[0] for label in labels if label]
    y = max(stroke, (rect.height - line_height * len(lines)) // 2)
    for line in lines:
        x = max(stroke, (rect.width - font.getlength(line)) / 2)
        draw.text((x, y), line, fill=INK, font=font)
        y += line_height
    return Layer(rect, gray=image)


def _url_label(ref: ImageRef) -> str:
    return ref.url.rstrip("/").rsplit("/", 1)[-1] or ref.url


def info_panel_layers(layout: DielineLayout, texts: TextAssets, dpi: int, font_path: Optional[str] = None) -> List[Layer]:
    """Back panel text blocks, stacked from the top fold down."""
    m = layout.metrics
    info, main = texts.info_panel, texts.main_panel
    start_x = m.A + 2 * m.Z + m.X
    start_y = m.B + m.Z - 2 * m.C
    padding = _scaled(30, dpi)
    area_width = m.A + m.X - 2 * padding
    size = pt_to_pixels(6, dpi)

    blocks = (
        ("INGREDIENTS_TXT", "INGREDIENTS: ", info.ingredients, 100, 110),
        ("DIRECTIONS_TXT", "DIRECTIONS: ", info.directions, 80, 90),
        ("WARNINGS_TXT", "WARNINGS: ", info.warnings, 80, 90),
        ("MANUFACTURER_TXT", "MANUFACTURER: ", main.manufacturer or info.manufacturer, 50, 60),
        ("MANUFACTURER_ADD_TXT", "ADDRESS: ", main.address or info.address, 50, 60),
        ("MADE_IN_TXT", "MADE IN: ", info.origin, 50, 60),
    )

    layers: List[Layer] = []
    y = start_y + padding
    for name, label, content, height, advance in blocks:
        if content.strip():
            rect = _clip(Rect(name, start_x + padding, y, area_width, _scaled(height, dpi)), layout)
            layers.append(text_layer(rect, label + content, size, font_path))
        y += _scaled(advance, dpi)

    if main.capacity_info_back.strip():
        area_height = _scaled(100, dpi)
        cap_y = start_y + m.Y + 2 * m.C - padding - area_height
        rect = _clip(Rect("CapacityInfoBack", start_x + padding, cap_y, area_width, area_height), layout)
        layers.append(text_layer(rect, main.capacity_info_back, pt_to_pixels(10, dpi), font_path))
    return [layer for layer in layers if layer is not None]


def main_panel_layers(layout: DielineLayout, texts: TextAssets, dpi: int, font_path: Optional[str] = None) -> List[Layer]:
    """Front panel selling points, product name and capacity line."""
    m = layout.metrics
    main = texts.main_panel
    panel_x = m.A + m.Z
    panel_y = m.B + m.Z
    padding = _scaled(40, dpi)
    content_x = panel_x + padding
    content_width = m.X - 2 * padding

    layers: List[Optional[Layer]] = []
    points_y = panel_y + int(m.Y * 0.3)
    if main.product_name.strip():
        # Between the logo box and the selling points
        name_rect = Rect("ProductName_TXT", content_x, panel_y + int(m.Y * 0.27), content_width, _scaled(80, dpi))
        layers.append(text_layer(_clip(name_rect, layout), main.product_name, pt_to_pixels(12, dpi), font_path))
        points_y = max(points_y, name_rect.bottom + padding // 2)

    line_height = _scaled(60, dpi)
    for i, point in enumerate(main.selling_points):
        if not point.strip():
            continue
        rect = _clip(Rect(f"SellingPoint_{i + 1}", content_x, points_y + i * line_height, content_width, line_height), layout)
        layers.append(text_layer(rect, "• " + point, pt_to_pixels(8, dpi), font_path))

    if main.capacity_info.strip():
        area_height = _scaled(100, dpi)
        rect = _clip(Rect("CapacityInfo_Front", content_x, panel_y + m.Y - padding - area_height, content_width, area_height), layout)
        layers.append(text_layer(rect, main.capacity_info, pt_to_pixels(10, dpi), font_path))
    return [layer for layer in layers if layer is not None]


def _logo_size(layout: DielineLayout, dpi: int) -> Tuple[int, int]:
    m = layout.metrics
    width = min(cm_to_pixels(LOGO_MAX_CM[0], dpi), m.X - 2 * _scaled(40, dpi))
    height = min(cm_to_pixels(LOGO_MAX_CM[1], dpi), int(m.Y * 0.14))
    return max(0, width), max(0, height)


def image_placeholder_layers(
    layout: DielineLayout,
    request: GenerationRequest,
    dpi: int,
    font_path: Optional[str] = None,
) -> List[Layer]:
    """
    Logo box centred near the top of the front panel, barcode box centred
    above the bottom fold of the back panel.
    """
    m = layout.metrics
    images = request.assets.images
    brand = request.assets.texts.main_panel.brand_name.strip()
    size = pt_to_pixels(8, dpi)
    stroke = _scaled(4, dpi)
    layers: List[Optional[Layer]] = []

    if images.logo is not None or brand:
        width, height = _logo_size(layout, dpi)
        if width > 0 and height > 0:
            left = m.A + m.Z + (m.X - width) // 2
            top = m.B + m.Z + int(m.Y * 0.12)
            labels = [brand or "LOGO", _url_label(images.logo) if images.logo else ""]
            layers.append(placeholder_layer(_clip(Rect("BrandLogo_Placeholder", left, top, width, height), layout), labels, size, stroke, font_path))

    if images.barcode is not None:
        width = min(cm_to_pixels(BARCODE_MAX_CM[0], dpi), m.X - 2 * _scaled(40, dpi))
        height = min(cm_to_pixels(BARCODE_MAX_CM[1], dpi), int(m.Y * 0.3))
        if width > 0 and height > 0:
            left = m.A + 2 * m.Z + m.X + (m.X - width) // 2
            top = m.B + m.Z + m.Y - int(m.Y * 0.10) - height
            labels = ["BARCODE", _url_label(images.barcode)]
            layers.append(placeholder_layer(_clip(Rect("Barcode_Placeholder", left, top, width, height), layout), labels, size, stroke, font_path))
    return [layer for layer in layers if layer is not None]


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------


def _run_spans(row: bytes) -> List[Span]:
    return [(value, sum(1 for _ in run)) for value, run in groupby(row)]


def _flush_literal(out: bytearray, literal: bytearray) -> None:
    if literal:
        out.append(len(literal) - 1)
        out += literal
        literal.clear()


def packbits(spans: Iterable[Span]) -> bytes:
    """Encode runs with PackBits; single bytes are gathered into literal packets."""
    out = bytearray()
    literal = bytearray()
    for value, length in spans:
        while length > 0:
            if length == 1:
                literal.append(value)
                if len(literal) == 128:
                    _flush_literal(out, literal)
                break
            _flush_literal(out, literal)
            chunk = min(length, 128)
            out += bytes((257 - chunk, value))
            length -= chunk
    _flush_literal(out, literal)
    return bytes(out)


def _row_spans(layout: DielineLayout, y: int) -> List[Span]:
    covering = [p for p in layout.panels if p.top <= y < p.bottom and p.width > 0]
    edges = sorted({0, layout.width, *(min(max(p.left, 0), layout.width) for p in covering), *(min(p.right, layout.width) for p in covering)})
    spans: List[Span] = []
    for x0, x1 in zip(edges, edges[1:]):
        if x1 <= x0:
            continue
        value = WHITE
        # later panels paint over earlier ones
        for panel in covering:
            if panel.left <= x0 < panel.right:
                value = SHADES[panel.name]
        if spans and spans[-1][0] == value:
            spans[-1] = (value, spans[-1][1] + (x1 - x0))
        else:
            spans.append((value, x1 - x0))
    return spans


def _band_breaks(layout: DielineLayout) -> List[int]:
    breaks = {0, layout.height}
    for panel in layout.panels:
        breaks.update((min(max(panel.top, 0), layout.height), min(panel.bottom, layout.height)))
    return sorted(breaks)


def _as_image(plane: Plane, size: Tuple[int, int]) -> Image.Image:
    return Image.new("L", size, plane) if isinstance(plane, int) else plane


def _composite_patches(layout: DielineLayout, overlays: Sequence[Layer]) -> List[Tuple[Rect, bytes]]:
    """Flatten each overlay onto the panels and the overlays beneath it."""
    patches: List[Tuple[Rect, Image.Image]] = []
    for layer in overlays:
        r = layer.rect
        size = (r.width, r.height)
        base = Image.new("L", size, WHITE)
        draw = ImageDraw.Draw(base)
        for panel in layout.panels:
            box = _intersection(panel, r)
            if box:
                draw.rectangle(
                    (box.left - r.left, box.top - r.top, box.right - r.left - 1, box.bottom - r.top - 1),
                    fill=SHADES[panel.name],
                )
        for below, image in patches:
            box = _intersection(below, r)
            if box:
                crop = image.crop((box.left - below.left, box.top - below.top, box.right - below.left, box.bottom - below.top))
                base.paste(crop, (box.left - r.left, box.top - r.top))
        patch = Image.composite(_as_image(layer.gray, size), base, _as_image(layer.alpha, size))
        patches.append((r, patch))
    return [(r, image.tobytes()) for r, image in patches]


def _scanline_groups(layout: DielineLayout, patches: Sequence[Tuple[Rect, bytes]]) -> Iterator[Tuple[int, List[Span]]]:
    """Yield (row count, spans) for the composite, top to bottom."""
    breaks = set(_band_breaks(layout))
    for rect, _ in patches:
        breaks.update((rect.top, rect.bottom))
    ordered = sorted(b for b in breaks if 0 <= b <= layout.height)

    for top, bottom in zip(ordered, ordered[1:]):
        spans = _row_spans(layout, top)
        covering = [(rect, data) for rect, data in patches if rect.top <= top < rect.bottom]
        if not covering:
            yield bottom - top, spans
            continue
        base_row = b"".join(bytes((value,)) * length for value, length in spans)
        for y in range(top, bottom):
            row = bytearray(base_row)
            for rect, data in covering:
                offset = (y - rect.top) * rect.width
                row[rect.left : rect.right] = data[offset : offset + rect.width]
            yield 1, _run_spans(row)


def _rle_plane(plane: Plane, width: int, height: int) -> bytes:
    """Channel image data for one layer plane, RLE compressed."""
    if isinstance(plane, int):
        line = packbits([(plane, width)])
        return struct.pack(">H", 1) + struct.pack(">H", len(line)) * height + line * height
    raw = plane.tobytes()
    rows = [packbits(_run_spans(raw[y * width : (y + 1) * width])) for y in range(height)]
    return struct.pack(">H", 1) + b"".join(struct.pack(">H", len(r)) for r in rows) + b"".join(rows)


def _layer_channels(layer: Layer, cmyk: bool) -> List[Tuple[int, bytes]]:
    width, height = layer.rect.width, layer.rect.height
    gray = _rle_plane(layer.gray, width, height)
    if cmyk:
        # CMYK data is stored inverted; greys use the black plate only
        no_ink = _rle_plane(WHITE, width, height)
        colour = [(0, no_ink), (1, no_ink), (2, no_ink), (3, gray)]
    else:
        colour = [(0, gray), (1, gray), (2, gray)]
    return [(-1, _rle_plane(layer.alpha, width, height))] + colour


def _pascal_name(name: str) -> bytes:
    raw = name.encode("ascii", "replace")[:255]
    data = bytes((len(raw),)) + raw
    return data + b"\x00" * (-len(data) % 4)


def _layer_section(layout: DielineLayout, overlays: Sequence[Layer], cmyk: bool) -> bytes:
    layers = [Layer(Rect("BG", 0, 0, layout.width, layout.height), WHITE)]
    layers += [Layer(clipped, SHADES[panel.name]) for panel in layout.panels if (clipped := _clip(panel, layout))]
    layers += overlays

    records = io.BytesIO()
    pixels = io.BytesIO()
    # Records run bottom to top
    for layer in layers:
        r = layer.rect
        channels = _layer_channels(layer, cmyk)
        records.write(struct.pack(">iiiiH", r.top, r.left, r.bottom, r.right, len(channels)))
        for channel_id, data in channels:
            records.write(struct.pack(">hI", channel_id, len(data)))
            pixels.write(data)
        records.write(b"8BIMnorm" + bytes((255, 0, 0, 0)))  # opacity, clipping, flags, filler
        extra = struct.pack(">II", 0, 0) + _pascal_name(layer.name)  # no mask, no blending ranges
        records.write(struct.pack(">I", len(extra)) + extra)

    info = struct.pack(">h", len(layers)) + records.getvalue() + pixels.getvalue()
    if len(info) % 2:
        info += b"\x00"
    body = struct.pack(">I", len(info)) + info + struct.pack(">I", 0)  # no global layer mask
    return struct.pack(">I", len(body)) + body


def _resolution_resource(dpi: int) -> bytes:
    # ResolutionInfo (id 1005): 16.16 fixed DPI, unit 1 = pixels per inch, display unit 1 = inches
    fixed = dpi << 16
    payload = struct.pack(">IHHIHH", fixed, 1, 1, fixed, 1, 1)
    return b"8BIM" + struct.pack(">H", 1005) + b"\x00\x00" + struct.pack(">I", len(payload)) + payload


def encode_psd(
    layout: DielineLayout,
    dpi: int = 300,
    color_mode: str = "rgb",
    overlays: Sequence[Layer] = (),
) -> bytes:
    """
    Encode the panels and overlay layers as a PSD document.

    Args:
        layout: Canvas size and panel rectangles
        dpi: Resolution written to the resolution resource
        color_mode: ``"rgb"`` or ``"cmyk"``
        overlays: Artwork layers, bottom to top; each must lie on the canvas

    Raises:
        ValueError: If the canvas is empty or larger than the PSD limit
    """
    check_canvas(layout)

    cmyk = color_mode == "cmyk"
    channels = 4 if cmyk else 3
    mode = 4 if cmyk else 3

    # Rows without artwork share one encoded scanline per band
    groups: List[Tuple[int, Sequence[bytes]]] = []
    no_ink = packbits([(WHITE, layout.width)])
    for rows, spans in _scanline_groups(layout, _composite_patches(layout, overlays)):
        line = packbits(spans)
        lines: Sequence[bytes] = (no_ink, no_ink, no_ink, line) if cmyk else (line,) * channels
        groups.append((rows, lines))

    buffer = io.BytesIO()
    buffer.write(b"8BPS" + struct.pack(">H", 1) + b"\x00" * 6)
    buffer.write(struct.pack(">HIIHH", channels, layout.height, layout.width, 8, mode))
    buffer.write(struct.pack(">I", 0))  # color mode data
    resources = _resolution_resource(dpi)
    buffer.write(struct.pack(">I", len(resources)) + resources)
    buffer.write(_layer_section(layout, overlays, cmyk))

    buffer.write(struct.pack(">H", 1))  # RLE
    for channel in range(channels):
        for rows, lines in groups:
            buffer.write(struct.pack(">H", len(lines[channel])) * rows)
    for channel in range(channels):
        for rows, lines in groups:
            buffer.write(lines[channel] * rows)
    return buffer.getvalue()


class DielineGenerator:
    """
    Renders the carton dieline and its artwork for a request.

    Args:
        font_path: TrueType/OpenType font used for all text; Pillow's bundled
            font is used when omitted. Point it at a CJK-capable font for
            Chinese copy.
    """

    def __init__(self, font_path: Optional[str] = None) -> None:
        self.font_path = font_path or None

    def generate(self, request: GenerationRequest, on_progress: ProgressCallback) -> bytes:
        dim = request.specifications.dimensions
        print_config = request.specifications.print_config
        dpi = print_config.dpi
        texts = request.assets.texts

        on_progress(1, "Initializing canvas parameters...")
        layout = compute_layout(dim, dpi)
        check_canvas(layout)
        logger.info(f"Dieline canvas for '{request.project_name}': {layout.width}x{layout.height}px @ {dpi}dpi")

        on_progress(5, "Creating base layers...")
        on_progress(10, "Drawing dieline structure...")
        on_progress(15, "Drawing side panels...")
        on_progress(25, "Drawing main panels...")
        on_progress(35, "Drawing top and bottom flaps...")

        on_progress(40, "Drawing info panel text...")
        overlays = info_panel_layers(layout, texts, dpi, self.font_path)
        overlays += main_panel_layers(layout, texts, dpi, self.font_path)

        on_progress(55, "Placing barcode and logo...")
        overlays += image_placeholder_layers(layout, request, dpi, self.font_path)
        logger.debug(f"Artwork layers: {[layer.name for layer in overlays]}")

        on_progress(70, "Encoding document...")
        data = encode_psd(layout, dpi, print_config.color_mode, overlays)

        on_progress(90, "Generation finished, preparing output...")
        return data
