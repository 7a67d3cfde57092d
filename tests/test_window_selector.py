import pytest

from window_selector import (
    aimd_decrease,
    aimd_increase,
    delay_threshold,
    saturating_sub,
    select_delay_triggered,
    select_probabilistic,
)


@pytest.mark.parametrize(
    "value,amount,expected", [(30, 10, 20), (10, 10, 0), (5, 10, 0), (0, 1, 0)]
)
def test_saturating_sub(value, amount, expected):
    assert saturating_sub(value, amount) == expected


def test_probabilistic_blend():
    # target = 30 / 100 packets/ms * 100 ms = 30 datagrams
    assert select_probabilistic(30, 100, 100.0, 0.5, 20) == 25
    assert select_probabilistic(30, 100, 100.0, 1.0, 20) == 30
    assert select_probabilistic(0, 100, 100.0, 1.0, 20) == 0


def test_delay_triggered_decrease_saturates():
    args = dict(
        rtt=400,
        threshold=350,
        sequence_advanced=True,
        since_last_update=10,
        update_period_ms=2,
        increment=1,
        decrement=10,
    )
    assert select_delay_triggered(30, **args) == 20
    assert select_delay_triggered(5, **args) == 0


def test_delay_triggered_increase_respects_period():
    args = dict(
        rtt=50, threshold=350, update_period_ms=2, increment=1, decrement=10
    )
    assert select_delay_triggered(30, sequence_advanced=True, since_last_update=5, **args) == 31
    assert select_delay_triggered(30, sequence_advanced=True, since_last_update=1, **args) == 30
    assert select_delay_triggered(30, sequence_advanced=False, since_last_update=5, **args) == 20


def test_delay_threshold_relative_to_min_rtt():
    assert delay_threshold(350, 2.0, 40) == 80
    assert delay_threshold(350, 2.0, None) == 350
    assert delay_threshold(350, None, 40) == 350


def test_aimd_increase_once_per_window():
    assert aimd_increase(3, 0, 1) == (3, 1)
    assert aimd_increase(3, 2, 1) == (4, 0)


@pytest.mark.parametrize(
    "window,factor,min_window,expected",
    [(20, 0.5, 0, 10), (7, 0.5, 0, 3), (5, 0.1, 1, 1), (5, 0.1, 0, 0)],
)
def test_aimd_decrease_truncates(window, factor, min_window, expected):
    assert aimd_decrease(window, factor, min_window) == expected
