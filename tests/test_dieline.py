"""
Tests for the bundled dieline PSD engine.
"""

import copy
import struct

import pytest
from PIL import ImageFont

from aims_design_backend.dieline import (
    PSD_MAX_SIDE,
    DielineGenerator,
    DielineLayout,
    compute_layout,
    encode_psd,
    packbits,
    wrap_text,
)
from aims_design_backend.models import Dimensions, GenerationRequest


def _header(data):
    signature, version = data[:4], struct.unpack(">H", data[4:6])[0]
    channels, height, width, depth, mode = struct.unpack(">HIIHH", data[12:26])
    return signature, version, channels, height, width, depth, mode


def _unpackbits(data):
    out = bytearray()
    i = 0
    while i < len(data):
        header = data[i]
        if header < 128:
            out += data[i + 1 : i + 2 + header]
            i += 2 + header
        elif header > 128:
            out += bytes([data[i + 1]]) * (257 - header)
            i += 2
        else:
            i += 1
    return bytes(out)


def _layer_names(data):
    pos = 26
    pos += 4 + struct.unpack(">I", data[pos : pos + 4])[0]  # color mode data
    pos += 4 + struct.unpack(">I", data[pos : pos + 4])[0]  # image resources
    pos += 8  # layer and mask length, layer info length
    count = struct.unpack(">h", data[pos : pos + 2])[0]
    pos += 2
    names = []
    for _ in range(abs(count)):
        pos += 16
        channels = struct.unpack(">H", data[pos : pos + 2])[0]
        pos += 2 + 6 * channels + 12
        extra_length = struct.unpack(">I", data[pos : pos + 4])[0]
        extra = data[pos + 4 : pos + 4 + extra_length]
        cursor = 4 + struct.unpack(">I", extra[:4])[0]
        cursor += 4 + struct.unpack(">I", extra[cursor : cursor + 4])[0]
        names.append(extra[cursor + 1 : cursor + 1 + extra[cursor]].decode("ascii"))
        pos += 4 + extra_length
    return names


def _generate(payload):
    request = GenerationRequest.model_validate(payload)
    return DielineGenerator().generate(request, lambda p, m: None)


class TestLayout:
    def test_canvas_size(self):
        dim = Dimensions(length=2.54, width=2.54, height=2.54, bleed_left_right=0.254, bleed_top_bottom=0.254)
        layout = compute_layout(dim, dpi=100)
        # X=Y=Z=100, A=B=10, C=0
        assert layout.width == 2 * 100 + 2 * 100 + 2 * 10
        assert layout.height == 100 + 2 * 100 + 2 * 10

    def test_panels_fit_canvas(self):
        dim = Dimensions(length=12, width=4, height=16.5, bleed_left_right=0.3, bleed_top_bottom=0.3, inner_bleed=0.1)
        layout = compute_layout(dim, dpi=72)
        for panel in layout.panels:
            assert panel.left >= 0 and panel.top >= 0
            assert panel.right <= layout.width
            assert panel.bottom <= layout.height
        back = next(p for p in layout.panels if p.name == "back")
        assert back.right == layout.width


class TestEncoding:
    def test_packbits_round_trip(self):
        spans = [(255, 300), (10, 1), (200, 129)]
        assert _unpackbits(packbits(spans)) == bytes([255]) * 300 + bytes([10]) + bytes([200]) * 129

    def test_packbits_literals_round_trip(self):
        row = bytes([1, 2, 3]) + bytes([9]) * 5 + bytes(range(200))
        spans = [(value, 1) for value in row[:3]] + [(9, 5)] + [(value, 1) for value in row[8:]]
        assert _unpackbits(packbits(spans)) == row

    def test_rgb_header_and_resolution(self):
        dim = Dimensions(length=2, width=1, height=3)
        data = encode_psd(compute_layout(dim, dpi=72), dpi=72)
        signature, version, channels, height, width, depth, mode = _header(data)
        layout = compute_layout(dim, dpi=72)
        assert signature == b"8BPS"
        assert version == 1
        assert (channels, depth, mode) == (3, 8, 3)
        assert (width, height) == (layout.width, layout.height)
        assert b"8BIM" + struct.pack(">H", 1005) in data

    def test_cmyk_has_four_channels(self):
        data = encode_psd(compute_layout(Dimensions(length=1, width=1, height=1), dpi=72), color_mode="cmyk")
        _, _, channels, _, _, _, mode = _header(data)
        assert (channels, mode) == (4, 4)

    def test_oversized_canvas_rejected(self):
        layout = DielineLayout(width=PSD_MAX_SIDE + 1, height=10, panels=())
        with pytest.raises(ValueError):
            encode_psd(layout)


class TestGenerator:
    def test_generate_reports_increasing_progress(self, sample_request):
        seen = []
        data = DielineGenerator().generate(sample_request, lambda p, m: seen.append(p))
        assert data.startswith(b"8BPS")
        assert seen == sorted(seen)
        assert seen[0] == 1 and seen[-1] == 90

    def test_generate_fails_for_huge_box(self, sample_payload):
        sample_payload["specifications"]["dimensions"].update(length=900, width=900)
        sample_payload["specifications"]["print_config"]["dpi"] = 300
        request = GenerationRequest.model_validate(sample_payload)
        with pytest.raises(ValueError):
            DielineGenerator().generate(request, lambda p, m: None)


class TestArtwork:
    def test_panels_and_artwork_are_named_layers(self, sample_payload):
        names = _layer_names(_generate(sample_payload))
        assert names[:7] == ["BG", "left", "front", "right", "back", "top", "bottom"]
        for expected in (
            "INGREDIENTS_TXT",
            "WARNINGS_TXT",
            "ProductName_TXT",
            "SellingPoint_1",
            "SellingPoint_2",
            "CapacityInfo_Front",
            "BrandLogo_Placeholder",
            "Barcode_Placeholder",
        ):
            assert expected in names
        assert "MADE_IN_TXT" not in names

    def test_missing_assets_produce_no_layers(self, sample_payload):
        sample_payload["assets"] = {}
        names = _layer_names(_generate(sample_payload))
        assert names == ["BG", "left", "front", "right", "back", "top", "bottom"]

    def test_cmyk_document_keeps_layers(self, sample_payload):
        sample_payload["specifications"]["print_config"]["color_mode"] = "cmyk"
        data = _generate(sample_payload)
        assert "Barcode_Placeholder" in _layer_names(data)
        assert struct.unpack(">H", data[12:14])[0] == 4

    def test_different_assets_give_different_documents(self, sample_payload):
        base = _generate(sample_payload)

        rebranded = copy.deepcopy(sample_payload)
        rebranded["assets"]["texts"]["main_panel"]["brand_name"] = "OTHER BRAND"
        with_logo = copy.deepcopy(sample_payload)
        with_logo["assets"]["images"]["logo"] = {"url": "https://example.com/logo.png"}
        new_warning = copy.deepcopy(sample_payload)
        new_warning["assets"]["texts"]["info_panel"]["warnings"] = "Keep out of reach of children."

        variants = [_generate(p) for p in (rebranded, with_logo, new_warning)]
        assert base not in variants
        assert len(set(variants)) == len(variants)

    def test_same_request_is_reproducible(self, sample_payload):
        assert _generate(sample_payload) == _generate(copy.deepcopy(sample_payload))


class TestWrapText:
    @pytest.fixture
    def font(self):
        return ImageFont.load_default(size=10)

    def test_breaks_at_spaces(self, font):
        lines = wrap_text("alpha beta gamma delta epsilon", font, int(font.getlength("alpha beta")) + 1)
        assert lines[0] == "alpha beta"
        assert all(font.getlength(line) <= font.getlength("alpha beta") + 1 for line in lines)
        assert " ".join(lines) == "alpha beta gamma delta epsilon"

    def test_breaks_long_words(self, font):
        word = "x" * 40
        lines = wrap_text(word, font, int(font.getlength("x" * 10)))
        assert "".join(lines) == word
        assert len(lines) >= 4

    def test_keeps_paragraphs(self, font):
        assert wrap_text("one\ntwo", font, 1000) == ["one", "two"]
