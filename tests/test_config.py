import pytest
from pydantic import ValidationError

from media_pipeline.config import get_config_value, load_yaml, merge_dicts, resolve_config
from media_pipeline.models import MediaPipelineConfig, RetryConfig, WorkerConfig


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config()
    assert isinstance(config, MediaPipelineConfig)
    assert config.image.thumbnail.max_dimension == 300
    assert config.image.preview.max_dimension == 1080
    assert config.image.high.max_dimension is None
    assert config.video.preview.max_height == 720
    assert config.retry.max_attempts == 3


def test_yaml_matches_model_defaults():
    """default.yaml and the model defaults describe the same pipeline."""
    assert resolve_config() == MediaPipelineConfig()


def test_cli_override_db_path():
    config = resolve_config({"db_path": "/tmp/other.db"})
    assert config.queue.db_path == "/tmp/other.db"


def test_cli_override_workers_and_attempts():
    config = resolve_config({"workers": 3, "max_attempts": 5})
    assert config.worker.workers == 3
    assert config.retry.max_attempts == 5


def test_cli_override_backends():
    config = resolve_config({"storage_backend": "gcs", "notifier_backend": "pubsub"})
    assert config.storage.backend == "gcs"
    assert config.notifier.backend == "pubsub"


def test_cli_override_log_level_normalized():
    config = resolve_config({"log_level": "debug"})
    assert config.logging.level == "DEBUG"


def test_invalid_backend_rejected():
    with pytest.raises(ValidationError):
        resolve_config({"storage_backend": "s3"})


def test_local_config_file_overrides(tmp_path):
    local = tmp_path / "local.yaml"
    local.write_text("retry:\n  max_attempts: 7\nqueue:\n  video_visibility_timeout_s: 900\n")
    config = resolve_config(config_path=local)
    assert config.retry.max_attempts == 7
    assert config.queue.video_visibility_timeout_s == 900
    # Untouched keys keep their defaults
    assert config.retry.backoff_base_s == 5


def test_env_var_names_local_config(tmp_path, monkeypatch):
    local = tmp_path / "env.yaml"
    local.write_text("storage:\n  bucket: uploads-test\n")
    monkeypatch.setenv("MEDIA_PIPELINE_CONFIG", str(local))
    assert resolve_config().storage.bucket == "uploads-test"


def test_heartbeat_must_be_shorter_than_lease():
    with pytest.raises(ValidationError):
        MediaPipelineConfig.from_dict(
            {"queue": {"heartbeat_interval_s": 30, "image_visibility_timeout_s": 30}}
        )


def test_invalid_preset_rejected():
    with pytest.raises(ValidationError):
        MediaPipelineConfig.from_dict({"video": {"preset": "warp-speed"}})


def test_retry_config_bounds():
    with pytest.raises(ValidationError):
        RetryConfig(max_attempts=0)
    with pytest.raises(ValidationError):
        RetryConfig(backoff_factor=0.5)


def test_resolved_workers():
    assert WorkerConfig(workers=4).resolved_workers() == 4
    assert WorkerConfig().resolved_workers() >= 1


def test_load_yaml_missing_file(tmp_path):
    assert load_yaml(tmp_path / "nope.yaml") == {}


def test_merge_dicts_recursive():
    base = {"a": {"b": 1, "c": 2}, "d": 3}
    merged = merge_dicts(base, {"a": {"c": 20}, "e": 5})
    assert merged == {"a": {"b": 1, "c": 20}, "d": 3, "e": 5}
    assert base["a"]["c"] == 2


def test_get_config_value():
    config = MediaPipelineConfig()
    assert get_config_value(config, "retry.max_attempts") == 3
    assert get_config_value(config.model_dump(), "storage.bucket") == "media"
    assert get_config_value(config, "missing.key", default="x") == "x"
