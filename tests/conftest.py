import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from PIL import Image

from media_pipeline import pipeline
from media_pipeline.errors import StorageQuotaExceeded, StorageUnavailable
from media_pipeline.models import MediaPipelineConfig
from media_pipeline.notifier import Notifier
from media_pipeline.queue import JobPayload, MediaKind, SQLiteJobStore, SQLiteWorkQueue
from media_pipeline.queue.models import VARIANT_ORDER
from media_pipeline.storage import ObjectStore, StorageUploader
from media_pipeline.variants.specs import GeneratedVariant


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryObjectStore(ObjectStore):
    """In-memory object store; ``failures`` are raised by the next puts in order."""

    def __init__(self, bucket: str = "media"):
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.headers: Dict[str, dict] = {}
        self.failures: List[Exception] = []
        self.put_calls = 0
        self._lock = threading.Lock()

    def ensure_bucket(self) -> None:
        pass

    def put_file(self, key, path, content_type, cache_control, metadata=None, progress=None) -> int:
        with self._lock:
            self.put_calls += 1
            if self.failures:
                raise self.failures.pop(0)
            data = Path(path).read_bytes()
            self.objects[key] = data
            self.headers[key] = {
                "content_type": content_type,
                "cache_control": cache_control,
                "metadata": metadata or {},
            }
        if progress:
            progress(len(data), len(data))
        return len(data)

    def exists(self, key: str) -> bool:
        return key in self.objects

    def delete(self, key: str) -> bool:
        return self.objects.pop(key, None) is not None

    def fail_next(self, count: int, quota: bool = False) -> None:
        error_cls = StorageQuotaExceeded if quota else StorageUnavailable
        self.failures.extend(error_cls("simulated storage failure") for _ in range(count))


class RecordingNotifier(Notifier):
    """Keeps every published event; can be told to fail."""

    def __init__(self, fail: bool = False):
        super().__init__(max_retries=1, retry_delay_s=0)
        self.events = []
        self.attempts = 0
        self.fail = fail

    def _send(self, event) -> None:
        self.attempts += 1
        if self.fail:
            raise ConnectionError("broker down")
        self.events.append(event)


class FakeGenerator:
    """Writes three small variant files; raises queued errors first.

    ``on_generate`` runs before the files are written, e.g. to cancel the
    job while it is "transcoding".
    """

    def __init__(self):
        self.errors: List[Exception] = []
        self.calls = 0
        self.on_generate = None

    def generate(self, source_path, kind, scratch_dir, checkpoint=None):
        self.calls += 1
        if self.on_generate:
            self.on_generate()
        if checkpoint:
            checkpoint()
        if self.errors:
            raise self.errors.pop(0)
        if not Path(source_path).is_file():
            raise FileNotFoundError(source_path)

        fmt = "mp4" if MediaKind(kind) == MediaKind.VIDEO else "jpeg"
        variants = []
        for i, variant_type in enumerate(VARIANT_ORDER):
            variant_fmt = "jpeg" if variant_type.value == "thumbnail" else fmt
            path = Path(scratch_dir) / f"{variant_type.value}.{variant_fmt}"
            path.write_bytes(b"x" * (100 * (i + 1)))
            variants.append(
                GeneratedVariant(
                    type=variant_type,
                    local_path=path,
                    format=variant_fmt,
                    width=100 * (i + 1),
                    height=50 * (i + 1),
                )
            )
        return variants


def make_image(path: Path, size=(640, 480), mode="RGB", fmt="JPEG", color=(200, 30, 30)) -> Path:
    """Write a solid-color test image with Pillow."""
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    Image.new(mode, size, color).save(path, fmt)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_db(tmp_path):
    return str(tmp_path / "pipeline.db")


@pytest.fixture
def store(temp_db):
    store = SQLiteJobStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def queue(temp_db, clock):
    queue = SQLiteWorkQueue(temp_db, poll_interval_s=0.01, clock=clock)
    yield queue
    queue.close()


@pytest.fixture
def object_store():
    return MemoryObjectStore()


@pytest.fixture
def uploader(object_store):
    return StorageUploader(object_store)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def config(tmp_path, temp_db):
    return MediaPipelineConfig.from_dict(
        {
            "queue": {"db_path": temp_db, "poll_interval_s": 0.01, "lease_wait_timeout_s": 0},
            "retry": {"max_attempts": 3, "backoff_base_s": 5, "backoff_factor": 2},
            "worker": {"scratch_dir": str(tmp_path / "scratch")},
            "storage": {"root_dir": str(tmp_path / "objects")},
            "intake": {"upload_dir": str(tmp_path / "uploads")},
        }
    )


@pytest.fixture
def services(config, store, queue, uploader, notifier, generator):
    return pipeline.build_services(
        config,
        store=store,
        queue=queue,
        uploader=uploader,
        notifier=notifier,
        generator=generator,
    )


@pytest.fixture
def source_file(tmp_path):
    """A staged upload the worker is allowed to delete."""
    uploads = tmp_path / "uploads"
    uploads.mkdir(exist_ok=True)
    return make_image(uploads / "source.jpg")


@pytest.fixture
def make_payload(source_file):
    def _make(job_id: str = "job-1", kind: MediaKind = MediaKind.IMAGE, path: Optional[Path] = None):
        path = Path(path or source_file)
        return JobPayload(
            job_id=job_id,
            owner_id="owner-1",
            conversation_id="conv-1",
            message_id="msg-1",
            source_path=str(path),
            source_kind=kind,
            source_mime_type="image/jpeg" if kind == MediaKind.IMAGE else "video/mp4",
            source_size_bytes=path.stat().st_size if path.exists() else 0,
        )

    return _make


@pytest.fixture(scope="function")
async def client(services):
    from httpx import ASGITransport, AsyncClient

    from media_pipeline.api.main import create_app

    transport = ASGITransport(app=create_app(services))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
