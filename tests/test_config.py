import itertools

from dqwire.config import Config


def test_with_defaults_fills_unset_values():
    cfg = Config().with_defaults()
    assert cfg.dial_timeout == 5.0
    assert cfg.attempt_timeout == 15.0
    assert cfg.backoff_factor == 0.1
    assert cfg.backoff_cap == 1.0
    assert cfg.concurrent_leader_conns == 10
    assert cfg.dial is None


def test_with_defaults_keeps_explicit_values():
    def dial(address, timeout):
        raise OSError(address)

    original = Config(
        dial=dial,
        dial_timeout=0.05,
        attempt_timeout=0.1,
        retry_limit=2,
        permit_shared=True,
    )
    cfg = original.with_defaults()
    assert cfg.dial is dial
    assert cfg.dial_timeout == 0.05
    assert cfg.attempt_timeout == 0.1
    assert cfg.retry_limit == 2
    assert cfg.permit_shared is True


def test_with_defaults_leaves_original_untouched():
    original = Config()
    original.with_defaults()
    assert original.dial_timeout == 0.0
    assert original.backoff_cap == 0.0


def test_retry_limit_counts_extra_attempts():
    cfg = Config(retry_limit=2).with_defaults()
    assert [attempt for attempt, _ in cfg.retry_attempts()] == [1, 2, 3]


def test_retry_limit_one_gives_two_attempts():
    cfg = Config(retry_limit=1).with_defaults()
    assert [attempt for attempt, _ in cfg.retry_attempts()] == [1, 2]


def test_no_retry_limit_is_unbounded():
    cfg = Config().with_defaults()
    attempts = list(itertools.islice(cfg.retry_attempts(), 50))
    assert [a for a, _ in attempts] == list(range(1, 51))


def test_first_attempt_has_no_delay():
    cfg = Config(retry_limit=3).with_defaults()
    first = next(iter(cfg.retry_attempts()))
    assert first == (1, 0.0)


def test_backoff_doubles_below_cap():
    cfg = Config(backoff_factor=0.001, backoff_cap=1000.0)
    delays = list(itertools.islice(cfg.backoff_delays(), 8))
    assert delays[0] == 0.0
    for previous, current in zip(delays[1:], delays[2:]):
        assert current == 2 * previous


def test_backoff_is_capped_and_nondecreasing():
    cfg = Config().with_defaults()
    delays = list(itertools.islice(cfg.backoff_delays(), 20))
    assert delays == sorted(delays)
    assert max(delays) == cfg.backoff_cap
    assert all(d <= cfg.backoff_cap for d in delays)


def test_backoff_survives_huge_attempt_numbers():
    cfg = Config().with_defaults()
    late = list(itertools.islice(cfg.backoff_delays(), 2000, 2003))
    assert late == [cfg.backoff_cap] * 3


def test_zero_factor_falls_back_to_cap():
    cfg = Config(backoff_factor=0.0, backoff_cap=1.0)
    delays = list(itertools.islice(cfg.backoff_delays(), 5))
    assert delays[1:] == [1.0] * 4