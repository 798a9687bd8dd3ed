from __future__ import annotations

import pytest
from pydantic import ValidationError

from imagecache.common.metrics import Counter, Gauge, Histogram, MetricsRegistry
from imagecache.common.settings import ImageCacheSettings


def _env(monkeypatch, **values):
    for key, value in values.items():
        monkeypatch.setenv(key, value)


def test_settings_read_environment(monkeypatch, tmp_path):
    _env(
        monkeypatch,
        AWS_S3_BUCKET="media",
        URL_SIGNATURE_KEY="s3cret",
        AWS_ENDPOINT="[none]",
        AWS_ACCESS_KEY_ID="",
        AWS_SECRET_ACCESS_KEY="hidden",
        AWS_FORCE_PATH_STYLE="true",
        CACHE_DIR=str(tmp_path),
        PORT="8080",
    )
    settings = ImageCacheSettings(_env_file=None)
    assert settings.aws_s3_bucket == "media"
    assert settings.aws_endpoint is None
    assert settings.aws_access_key_id is None
    assert settings.aws_force_path_style is True
    assert settings.port == 8080
    assert settings.cache_dir == tmp_path
    assert settings.coalesce_misses is True

    described = settings.describe()
    assert described["url_signature_key"] == "[redacted]"
    assert described["aws"]["credentials"]["secret_access_key"] == "[redacted]"
    assert "s3cret" not in repr(described)
    assert "hidden" not in repr(described)


def test_settings_require_bucket_and_key(monkeypatch):
    monkeypatch.delenv("AWS_S3_BUCKET", raising=False)
    monkeypatch.delenv("URL_SIGNATURE_KEY", raising=False)
    with pytest.raises(ValidationError):
        ImageCacheSettings(_env_file=None)


def test_settings_are_frozen_and_validated(settings):
    with pytest.raises(ValidationError):
        settings.port = 1
    with pytest.raises(ValidationError):
        ImageCacheSettings(aws_s3_bucket="b", url_signature_key="k", max_image_dimension=0, _env_file=None)


def test_registry_renders_metrics():
    registry = MetricsRegistry()
    counter = registry.register(Counter("hits_total", "Hits"))
    assert registry.register(Counter("hits_total", "Duplicate")) is counter
    counter.inc()
    counter.inc(2)
    gauge = registry.register(Gauge("pending", "Pending writes"))
    gauge.inc()
    gauge.dec(0.5)
    histogram = registry.register(Histogram("latency_seconds", [0.1, 1.0], "Latency"))
    histogram.observe(0.05)
    histogram.observe(0.5)

    rendered = registry.render()
    assert "# TYPE hits_total counter" in rendered
    assert "hits_total 3.0" in rendered
    assert "pending 0.5" in rendered
    assert 'latency_seconds_bucket{le="0.1"} 1' in rendered
    assert 'latency_seconds_bucket{le="+Inf"} 2' in rendered
    assert "latency_seconds_count 2" in rendered


def test_counter_rejects_negative_increment():
    with pytest.raises(ValueError):
        Counter("c").inc(-1)
