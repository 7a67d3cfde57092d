import pytest

from rtt_sampler import RttSample, RttSampler


def test_first_sample_seeds_statistics():
    sampler = RttSampler()
    assert not sampler.has_samples

    assert sampler.sample(100, 150) == 50
    assert sampler.min_rtt == 50
    assert sampler.ewma_rtt == pytest.approx(50.0)
    assert sampler.has_samples


def test_ewma_and_min_rtt_update():
    sampler = RttSampler(alpha=0.2)
    sampler.sample(100, 150)
    sampler.sample(200, 300)

    assert sampler.min_rtt == 50
    assert sampler.last_rtt == 100
    assert sampler.ewma_rtt == pytest.approx(0.2 * 100 + 0.8 * 50)


@pytest.mark.parametrize(
    "send_time,ack_recv_time",
    [(300, 250), (float("nan"), 10), (0, float("inf")), ("garbled", 10)],
)
def test_implausible_samples_clamped_to_zero(send_time, ack_recv_time):
    sampler = RttSampler()
    assert sampler.sample(send_time, ack_recv_time) == 0
    assert sampler.clamped == 1
    assert sampler.min_rtt == 0


def test_record_uses_sender_timestamps():
    sampler = RttSampler()
    sample = RttSample(
        sequence_number=7, send_time=1000, recv_time_local=3, ack_recv_time=1060
    )
    assert sampler.record(sample) == 60


def test_rtt_sample_clamps_skew():
    assert RttSample(1, 100, 120, 90).rtt == 0
    assert RttSample(1, 100, 120, 180).rtt == 80


@pytest.mark.parametrize("alpha", [0.0, -0.1, 1.5])
def test_invalid_alpha_rejected(alpha):
    with pytest.raises(ValueError):
        RttSampler(alpha=alpha)
