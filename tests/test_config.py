from __future__ import annotations

import random

import pydantic
import pytest

from field_sync_client.backoff import RetryPolicy
from field_sync_client.config import ClientSettings


def test_defaults():
    settings = ClientSettings.from_env({})
    assert settings.api_url == "http://localhost:8000"
    assert settings.max_attempts == 5
    assert settings.auth_token is None


def test_from_env_reads_prefixed_variables():
    settings = ClientSettings.from_env({
        "FIELD_SYNC_API_URL": "https://issues.example.org",
        "FIELD_SYNC_MAX_ATTEMPTS": "7",
        "FIELD_SYNC_BACKOFF_BASE": "1.5",
        "FIELD_SYNC_AUTH_TOKEN": "",
        "API_URL": "ignored",
    })
    assert settings.api_url == "https://issues.example.org"
    assert settings.max_attempts == 7
    assert settings.auth_token is None

    policy = settings.retry_policy()
    assert policy.max_attempts == 7
    assert policy.base_delay == 1.5


def test_from_env_rejects_bad_values():
    with pytest.raises(pydantic.ValidationError):
        ClientSettings.from_env({"FIELD_SYNC_MAX_ATTEMPTS": "0"})


def test_backoff_doubles_until_cap():
    policy = RetryPolicy(max_attempts=5, base_delay=2, max_delay=30)
    assert [policy.delay_for(n) for n in range(1, 7)] == [2, 4, 8, 16, 30, 30]
    assert policy.delay_for(10_000) == 30


def test_backoff_jitter_stays_in_bounds():
    policy = RetryPolicy(base_delay=10, max_delay=100, jitter=0.5)
    rng = random.Random(7)
    for attempt in range(1, 8):
        base = min(10 * 2 ** (attempt - 1), 100)
        delay = policy.delay_for(attempt, rng)
        assert base * 0.5 <= delay <= min(base * 1.5, 100)


def test_exhaustion_threshold():
    policy = RetryPolicy(max_attempts=3)
    assert not policy.exhausted(2)
    assert policy.exhausted(3)


@pytest.mark.parametrize("kwargs", [
    {"max_attempts": 0},
    {"base_delay": 0},
    {"base_delay": 10, "max_delay": 5},
    {"jitter": 1.5},
])
def test_invalid_policy(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
