import time

import httpx
from pydantic import BaseModel

from enhance_batch.config import settings


class ProviderError(RuntimeError):
    pass


class ProviderHTTPError(ProviderError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderJobFailed(ProviderError):
    pass


class PollTimeoutError(ProviderError):
    pass


class PollCancelledError(ProviderError):
    pass


class ProviderJob(BaseModel):
    status: str
    progress: float | None = None
    output_url: str | None = None
    error: str | None = None


class EnhancementClient:
    """Adapter for the asynchronous image transformation API."""

    def __init__(self, base_url: str | None = None, api_key: str | None = None) -> None:
        self.base_url = (base_url or settings.provider_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.provider_api_key

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("PROVIDER_API_KEY is not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, attempts: int = 1, **kwargs) -> httpx.Response:
        last_err: Exception | None = None
        for attempt in range(attempts):
            try:
                with httpx.Client(timeout=settings.provider_timeout_sec) as client:
                    r = client.request(method, url, **kwargs)
                    r.raise_for_status()
                    return r
            except httpx.TimeoutException as exc:
                last_err = ProviderHTTPError(f"timeout: {exc}")
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in {429, 500, 502, 503, 504}:
                    last_err = ProviderHTTPError(f"transient_http_{code}", status_code=code)
                else:
                    raise ProviderHTTPError(f"http_{code}: {exc.response.text}", status_code=code) from exc
            except httpx.HTTPError as exc:
                last_err = ProviderHTTPError(str(exc))

            if attempt + 1 < attempts:
                time.sleep(0.6 * (attempt + 1))

        assert last_err is not None
        raise last_err

    def submit(
        self,
        source_url: str,
        instruction: str,
        width: int | None = None,
        height: int | None = None,
        fit: str | None = None,
    ) -> str:
        body: dict = {
            "image_url": source_url,
            "prompt": instruction,
            "output_format": "jpg",
            "quality": 95,
        }
        if width and height:
            body["width"] = width
            body["height"] = height
            body["fit"] = fit or "cover"
        r = self._request("POST", f"{self.base_url}/transform", headers=self._headers(), json=body)
        job_id = r.json().get("id")
        if not job_id:
            raise ProviderError("submit response did not include a job id")
        return str(job_id)

    def poll(self, job_id: str) -> ProviderJob:
        r = self._request("GET", f"{self.base_url}/transform/{job_id}", headers=self._headers())
        return ProviderJob.model_validate(r.json())

    def fetch_result(self, output_url: str) -> bytes:
        r = self._request("GET", output_url, attempts=3)
        return r.content
