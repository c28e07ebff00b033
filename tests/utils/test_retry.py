import pytest

from rsboot.utils.retry import RetryError, retry


def test_retries_until_success_with_backoff():
    waits = []
    calls = {"n": 0}

    @retry(retries=5, delay=1, backoff=2, max_delay=3, retry_on=(ValueError,), sleep=waits.append)
    def flaky():
        calls["n"] += 1
        if calls["n"] < 4:
            raise ValueError("not yet")
        return "up"

    assert flaky() == "up"
    assert waits == [1, 2, 3]


def test_gives_up_with_attempt_count():
    seen = []

    @retry(retries=3, delay=0, retry_on=(ValueError,), on_retry=lambda a, e: seen.append(a), sleep=lambda s: None)
    def never():
        raise ValueError("down")

    with pytest.raises(RetryError) as ei:
        never()
    assert ei.value.attempts == 3
    assert isinstance(ei.value.__cause__, ValueError)
    assert seen == [1, 2, 3]


def test_other_errors_propagate_immediately():
    calls = {"n": 0}

    @retry(retries=5, delay=0, retry_on=(ValueError,), sleep=lambda s: None)
    def broken():
        calls["n"] += 1
        raise KeyError("bug")

    with pytest.raises(KeyError):
        broken()
    assert calls["n"] == 1
