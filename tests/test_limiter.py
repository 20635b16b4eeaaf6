from datetime import datetime, timedelta, timezone

import pytest

from cmddaemon.limiter import Limiter

BASE = datetime(2023, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_next_zero_last_returns_now():
    limiter = Limiter(interval=timedelta(seconds=1), tz=timezone.utc)
    result = limiter.next_time()
    now = datetime.now(timezone.utc)
    assert abs(result - now) < timedelta(milliseconds=50)


@pytest.mark.parametrize(
    "count, interval, expected",
    [
        (0, timedelta(seconds=1), datetime(2023, 1, 1, 12, 0, 1, tzinfo=timezone.utc)),
        (1, timedelta(seconds=1), datetime(2023, 1, 1, 12, 0, 2, tzinfo=timezone.utc)),
        (3, timedelta(seconds=1), datetime(2023, 1, 1, 12, 0, 8, tzinfo=timezone.utc)),
        (2, timedelta(minutes=1), datetime(2023, 1, 1, 12, 4, 0, tzinfo=timezone.utc)),
    ],
)
def test_next_backoff(count, interval, expected):
    limiter = Limiter(count=count, last=BASE, interval=interval, tz=timezone.utc)
    assert limiter.next_time() == expected


def test_inc_until_limit():
    limiter = Limiter(tz=timezone.utc)
    results = [limiter.inc() for _ in range(6)]
    assert results == [True] * 5 + [False]
    assert limiter.count == 5
    assert limiter.last is not None


def test_dec_below_zero_refused():
    limiter = Limiter(tz=timezone.utc)
    assert limiter.dec() is False
    assert limiter.count == 0


def test_dec_after_inc():
    limiter = Limiter(tz=timezone.utc)
    assert limiter.inc() is True
    assert limiter.dec() is True
    assert limiter.count == 0


def test_reset():
    limiter = Limiter(count=4, last=BASE, tz=timezone.utc)
    limiter.reset()
    assert limiter.count == 0
    assert limiter.last is None