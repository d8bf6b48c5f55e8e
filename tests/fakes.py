import re
import threading

from enhance_batch.batches import SourceImage
from enhance_batch.provider import ProviderJob
from enhance_batch.storage import BlobStore, BlobStoreError


def done(job_id: str) -> ProviderJob:
    return ProviderJob(status="completed", progress=100, output_url=f"https://cdn.test/{job_id}.jpg")


class FakeProvider:
    """In-memory provider. Behaviour is scripted per source position."""

    def __init__(self, outcomes: dict | None = None, submit_errors: dict | None = None) -> None:
        self.outcomes = outcomes or {}
        self.submit_errors = submit_errors or {}
        self.submissions: list[dict] = []
        self.polls: list[str] = []
        self._jobs: dict[str, list[ProviderJob]] = {}
        self._lock = threading.Lock()

    def submit(self, source_url, instruction, width=None, height=None, fit=None) -> str:
        position = int(re.search(r"original_(\d+)", source_url).group(1))
        with self._lock:
            self.submissions.append(
                {
                    "position": position,
                    "source_url": source_url,
                    "instruction": instruction,
                    "width": width,
                    "height": height,
                    "fit": fit,
                }
            )
        if position in self.submit_errors:
            raise self.submit_errors[position]
        job_id = f"job-{position}"
        with self._lock:
            self._jobs[job_id] = list(self.outcomes.get(position, [done(job_id)]))
        return job_id

    def poll(self, job_id: str) -> ProviderJob:
        with self._lock:
            self.polls.append(job_id)
            script = self._jobs[job_id]
            return script.pop(0) if len(script) > 1 else script[0]

    def fetch_result(self, output_url: str) -> bytes:
        return b"enhanced:" + output_url.encode()


class FailingStore(BlobStore):
    """Blob store whose writes fail for selected path patterns."""

    def __init__(self, fail_pattern: str) -> None:
        super().__init__()
        self.fail_pattern = re.compile(fail_pattern)

    def put(self, path: str, data: bytes, content_type: str) -> None:
        if self.fail_pattern.search(path):
            raise BlobStoreError(f"simulated write failure for {path}")
        super().put(path, data, content_type)


class CountingStore(BlobStore):
    def __init__(self) -> None:
        super().__init__()
        self.puts: list[str] = []
        self.signed: list[str] = []

    def put(self, path: str, data: bytes, content_type: str) -> None:
        self.puts.append(path)
        super().put(path, data, content_type)

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        self.signed.append(path)
        return super().signed_url(path, ttl_seconds)


def sources(count: int, content_type: str = "image/jpeg") -> list[SourceImage]:
    return [
        SourceImage(filename=f"dish_{i}.jpg", content_type=content_type, data=f"raw-{i}".encode())
        for i in range(1, count + 1)
    ]
