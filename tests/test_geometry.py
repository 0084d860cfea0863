"""Tests for coordinate transforms."""

import math

import pytest

from signflow.geometry import Box, Point, to_display, to_document_space, to_page_space


class TestRoundTrip:
    """Display <-> document space."""

    @pytest.mark.parametrize("scale", [0.1, 0.5, 1.0, 1.25, 1.5, 2.0, 3.7, 10.0])
    def test_box_round_trip(self, scale):
        box = Box(x=72.5, y=640.25, width=150.0, height=50.0)
        back = to_document_space(to_display(box, scale), scale)
        for attr in ("x", "y", "width", "height"):
            assert math.isclose(getattr(back, attr), getattr(box, attr), abs_tol=1e-6)

    def test_to_display_scales_everything(self):
        shown = to_display(Box(x=10, y=20, width=30, height=40), 1.5)
        assert (shown.x, shown.y, shown.width, shown.height) == (15, 30, 45, 60)

    def test_point_to_document_space(self):
        point = to_document_space(Point(x=300, y=150), 1.5)
        assert isinstance(point, Point)
        assert (point.x, point.y) == (200, 100)


class TestScaleValidation:
    """Non-positive scales are programmer errors."""

    @pytest.mark.parametrize("scale", [0, -1, -0.5, float("nan"), float("inf")])
    def test_rejects_bad_scale(self, scale):
        box = Box(x=0, y=0, width=1, height=1)
        with pytest.raises(ValueError):
            to_display(box, scale)
        with pytest.raises(ValueError):
            to_document_space(box, scale)


class TestPageSpace:
    """Top-left document boxes to bottom-left PDF coordinates."""

    def test_flips_vertical_axis(self):
        box = to_page_space(Box(x=72, y=100, width=150, height=50), page_height=792)
        assert box.x == 72
        assert box.y == 792 - 100 - 50
        assert (box.width, box.height) == (150, 50)

    def test_box_at_top_lands_at_top(self):
        box = to_page_space(Box(x=0, y=0, width=100, height=20), page_height=792)
        assert box.y + box.height == 792

    def test_offset_media_box(self):
        box = to_page_space(
            Box(x=10, y=10, width=20, height=20),
            page_height=500,
            origin_x=50,
            origin_y=30,
        )
        assert box.x == 60
        assert box.y == 30 + 500 - 10 - 20
