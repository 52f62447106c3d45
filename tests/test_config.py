import pytest

import chunkferry.config as config_mod
from chunkferry.config import RetryPolicy, UploaderConfig, retry_delay
from chunkferry.rate_limiter import TokenBucketLimiter


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch):
    monkeypatch.setattr(config_mod, "load_dotenv", lambda *a, **k: False)


def test_defaults():
    cfg = UploaderConfig()
    assert cfg.max_concurrent_files == 3
    assert cfg.max_concurrent_chunks == 3
    assert cfg.chunk_size == 5 * 1024 * 1024
    assert cfg.retry_backoff is RetryPolicy.LINEAR
    assert cfg.persistence_key == "parallel-uploader-queue"
    assert cfg.snapshot_ttl == 86400


@pytest.mark.parametrize(
    "policy, attempts, expected",
    [
        (RetryPolicy.FIXED, [1, 2, 3], [500, 500, 500]),
        (RetryPolicy.LINEAR, [1, 2, 3], [500, 1000, 1500]),
        (RetryPolicy.EXPONENTIAL, [1, 2, 3], [500, 1000, 2000]),
    ],
)
def test_retry_delays(policy, attempts, expected):
    assert [retry_delay(policy, 500, a) for a in attempts] == expected


def test_invalid_values_raise():
    with pytest.raises(ValueError):
        UploaderConfig(max_concurrent_files=0)
    with pytest.raises(ValueError):
        UploaderConfig(retry_backoff="sometimes")
    with pytest.raises(ValueError):
        UploaderConfig(speed_limit=-1)


def test_zero_speed_limit_means_unthrottled():
    cfg = UploaderConfig(enable_speed_limit=True, speed_limit=0)
    limiter = TokenBucketLimiter(cfg.speed_limit, enabled=cfg.enable_speed_limit)
    assert not limiter.is_enabled()
    assert limiter.request_bytes(10_000) == 0


def test_from_env_reads_prefixed_variables(monkeypatch):
    monkeypatch.setenv("CHUNKFERRY_MAX_CONCURRENT_FILES", "5")
    monkeypatch.setenv("CHUNKFERRY_ENABLE_PERSISTENCE", "yes")
    monkeypatch.setenv("CHUNKFERRY_ALLOWED_TYPES", "image/*, PDF")
    monkeypatch.setenv("CHUNKFERRY_RETRY_BACKOFF", "Exponential")
    monkeypatch.setenv("CHUNKFERRY_PERFORMANCE_INTERVAL", "0.25")
    cfg = UploaderConfig.from_env(max_retries=7)
    assert cfg.max_concurrent_files == 5
    assert cfg.enable_persistence is True
    assert cfg.allowed_types == ["image/*", ".pdf"]
    assert cfg.retry_backoff is RetryPolicy.EXPONENTIAL
    assert cfg.performance_interval == 0.25
    assert cfg.max_retries == 7


def test_from_env_rejects_garbage(monkeypatch):
    monkeypatch.setenv("CHUNKFERRY_MAX_RETRIES", "lots")
    with pytest.raises(ValueError, match="max_retries"):
        UploaderConfig.from_env()
    monkeypatch.setenv("CHUNKFERRY_MAX_RETRIES", "2")
    monkeypatch.setenv("CHUNKFERRY_USE_WORKERS", "maybe")
    with pytest.raises(ValueError, match="use_workers"):
        UploaderConfig.from_env()


def test_replace_ignores_none():
    cfg = UploaderConfig().replace(max_retries=None, chunk_size=1024)
    assert cfg.max_retries == 3
    assert cfg.chunk_size == 1024
