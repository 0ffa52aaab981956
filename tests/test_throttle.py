"""Tests for frame throttling."""

import pytest

from cardscan.throttle import ThrottleScheduler


class TestThrottleScheduler:
    """Tests for ThrottleScheduler."""

    @pytest.fixture
    def scheduler(self):
        return ThrottleScheduler()

    def test_every_third_frame(self, scheduler):
        heavy = [i for i in range(12) if scheduler.should_run_heavy_preprocessing(i)]

        assert heavy == [0, 3, 6, 9]

    def test_first_four_frames(self, scheduler):
        """Frames 0..3 give exactly two heavy passes."""
        decisions = [scheduler.should_run_heavy_preprocessing(i) for i in range(4)]

        assert decisions == [True, False, False, True]
        assert scheduler.get_stats()["heavy"] == 2
        assert scheduler.get_stats()["light"] == 2

    def test_full_cycle(self, scheduler):
        """256 advances return the counter to 0, with 86 heavy frames on the way."""
        index = 0
        heavy = 0
        for _ in range(256):
            heavy += scheduler.should_run_heavy_preprocessing(index)
            index = scheduler.advance(index)

        assert index == 0
        assert heavy == 86

    def test_wraparound(self, scheduler):
        assert scheduler.advance(254) == 255
        assert scheduler.advance(255) == 0

    def test_heavy_after_wrap(self, scheduler):
        """255 is a multiple of 3, and so is the wrapped 0."""
        assert scheduler.should_run_heavy_preprocessing(255) is True
        assert scheduler.should_run_heavy_preprocessing(scheduler.advance(255)) is True

    @pytest.mark.parametrize("index", [-1, 256, 1000])
    def test_out_of_range(self, scheduler, index):
        with pytest.raises(ValueError):
            scheduler.should_run_heavy_preprocessing(index)
        with pytest.raises(ValueError):
            scheduler.advance(index)

    def test_custom_period(self):
        scheduler = ThrottleScheduler(period=1)

        assert all(scheduler.should_run_heavy_preprocessing(i) for i in range(10))

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            ThrottleScheduler(period=0)

    def test_reset_stats(self, scheduler):
        scheduler.should_run_heavy_preprocessing(0)
        scheduler.reset_stats()

        assert scheduler.get_stats()["heavy"] == 0
