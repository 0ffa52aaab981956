"""Tests for frame sources."""

import cv2
import numpy as np
import pytest

from cardscan.capture import ArrayFrameSource, Frame, VideoFrameSource
from cardscan.geometry import Size


SCREEN = Size(390.0, 844.0)


class TestFrame:
    """Tests for Frame."""

    def test_pixels_are_read_only(self):
        frame = Frame(np.zeros((4, 6, 3), dtype=np.uint8), sequence=0)

        with pytest.raises(ValueError):
            frame.pixels[0, 0, 0] = 1

    def test_extent(self):
        frame = Frame(np.zeros((1080, 1920, 3), dtype=np.uint8), sequence=7)

        assert frame.width == 1920
        assert frame.height == 1080
        assert frame.capture_extent == Size(1920.0, 1080.0)


class TestArrayFrameSource:
    """Tests for ArrayFrameSource."""

    def test_frames_in_order(self):
        images = [np.full((2, 2, 3), i, dtype=np.uint8) for i in range(3)]
        source = ArrayFrameSource(images, SCREEN)

        frames = list(source.frames())

        assert [f.sequence for f in frames] == [0, 1, 2]
        assert [int(f.pixels[0, 0, 0]) for f in frames] == [0, 1, 2]
        assert source.authorized() is True

    def test_unauthorized(self):
        assert ArrayFrameSource([], SCREEN, authorized=False).authorized() is False

    def test_from_files(self, tmp_path):
        path = tmp_path / "card.png"
        cv2.imwrite(str(path), np.full((20, 30, 3), 128, dtype=np.uint8))

        source = ArrayFrameSource.from_files([path], SCREEN)

        assert len(source.images) == 1
        assert source.images[0].shape == (20, 30, 3)

    def test_from_files_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ArrayFrameSource.from_files([tmp_path / "missing.png"], SCREEN)


class TestVideoFrameSource:
    """Tests for VideoFrameSource."""

    def test_missing_file_not_authorized(self, tmp_path):
        with VideoFrameSource(str(tmp_path / "missing.mp4"), SCREEN) as source:
            assert source.authorized() is False
            assert list(source.frames()) == []
