"""HTTP client for the remote image minification service."""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

import httpx
from jose import jwt

from ..core.config import Settings
from ..core.metrics import record_api_call

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUEST_ERROR_CODE = "image_minification_request"
DOWNLOAD_ERROR_CODE = "image_download_failed"
UNIQUE_ID_MISSING_CODE = "api_unique_id_missing"
JWT_CONFIGURATION_CODE = "api_jwt_configuration"

JWT_LIFETIME = 1200


class ErrorKind(str, enum.Enum):
    CONFIGURATION = "configuration"
    NETWORK = "network"
    SERVER = "server"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    UPSTREAM = "upstream"


@dataclass
class ApiError:
    kind: ErrorKind
    code: str
    message: str
    status: Optional[int] = None
    retry_after: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApiResult(Generic[T]):
    """Outcome of one call. Failures are values; nothing is raised."""

    ok: bool
    data: Optional[T] = None
    error: Optional[ApiError] = None
    quota_exceeded: bool = False
    concurrency_limit: Optional[int] = None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _retry_after(headers: httpx.Headers) -> Optional[int]:
    # Only the delta-seconds form is understood.
    value = headers.get("Retry-After", "").strip()
    return int(value) if value.isdigit() else None


def _kind_for_status(status: int) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status == 401:
        return ErrorKind.AUTH
    if 500 <= status < 600:
        return ErrorKind.SERVER
    return ErrorKind.UPSTREAM


def _message_for_status(status: int, body: Dict[str, Any], data: Dict[str, Any]) -> str:
    if status == 200:
        message = "" if "id" in data else "The API returned an empty response."
    elif status == 401:
        message = "API authentication failed."
    elif status == 429:
        message = "Request rate limit reached."
    else:
        message = f"The API returned an unexpected response code: {status}."
    if body.get("message"):
        message = f"{message} {body['message']}".strip()
    return message


class MinificationClient:
    """Signed requests against the ``v1/image-minification`` endpoint."""

    ENDPOINT = "v1/image-minification"
    AUTH_HEADER_NAME = "AccessKey"

    def __init__(
        self,
        *,
        base_url: str,
        unique_id: str,
        secret_key: str,
        site_url: str,
        timeout: float = 24.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.unique_id = unique_id
        self.secret_key = secret_key
        self.site_url = site_url
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> "MinificationClient":
        return cls(
            base_url=settings.SAAS_URL,
            unique_id=settings.UNIQUE_ID,
            secret_key=settings.SAAS_KEY,
            site_url=settings.SITE_URL,
            timeout=settings.SAAS_TIMEOUT,
            transport=transport,
        )

    def __enter__(self) -> "MinificationClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    # Configuration and auth

    def configuration_errors(self) -> list[ApiError]:
        errors = []
        if not self.unique_id:
            errors.append(self._unique_id_missing())
        if not self.secret_key:
            errors.append(self._jwt_misconfigured())
        return errors

    def auth_header(self) -> str | ApiError:
        if not self.unique_id:
            return self._unique_id_missing()
        if not self.secret_key:
            return self._jwt_misconfigured()

        payload = {
            "iss": self.site_url,
            "sub": self.unique_id,
            "exp": int(time.time()) + JWT_LIFETIME,
        }
        token = jwt.encode(payload, self.secret_key + self.unique_id, algorithm="HS256")
        return f"{token}.{self.unique_id}"

    def _unique_id_missing(self) -> ApiError:
        return ApiError(ErrorKind.CONFIGURATION, UNIQUE_ID_MISSING_CODE, "Unique ID is missing")

    def _jwt_misconfigured(self) -> ApiError:
        return ApiError(ErrorKind.CONFIGURATION, JWT_CONFIGURATION_CODE, "API signing key is not configured")

    # Operations

    def create_job(self, url: str, format: str, secret: str, return_url: str) -> ApiResult[str]:
        """Submit ``url`` for optimization; the result carries the external job id."""

        result = self._request(
            "create_job",
            "POST",
            self.ENDPOINT,
            data={"url": url, "format": format, "secret": secret, "return_url": return_url},
        )
        if not result.ok:
            return result
        data = result.data.get("data")
        job_id = data.get("id") if isinstance(data, dict) else None
        if job_id is None:
            result.ok = False
            result.data = None
            result.error = ApiError(
                ErrorKind.UPSTREAM, REQUEST_ERROR_CODE, "The API returned an empty response.", status=400
            )
            return result
        result.data = str(job_id)
        return result

    def get_job(self, job_id: str) -> ApiResult[Dict[str, Any]]:
        """Fetch ``{state, error?}`` for an external job."""

        result = self._request("get_job", "GET", f"{self.ENDPOINT}/{job_id}/")
        if result.ok:
            data = result.data.get("data")
            result.data = data if isinstance(data, dict) else {}
        return result

    def acknowledge(self, job_id: str) -> ApiResult[Dict[str, Any]]:
        return self._request("acknowledge", "POST", f"{self.ENDPOINT}/ack/", data={"id": job_id})

    def download_url(self, job_id: str) -> str:
        return f"{self.base_url}{self.ENDPOINT}/download/{job_id}/"

    def download(self, job_id: str) -> ApiResult[bytes]:
        """Fetch the optimized image bytes."""

        header = self.auth_header()
        if isinstance(header, ApiError):
            record_api_call("download", header.kind.value)
            return ApiResult(ok=False, error=header)

        try:
            response = self._http.get(
                self.download_url(job_id),
                headers={self.AUTH_HEADER_NAME: header, "Cache-Control": "no-cache"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Image download for job %s failed: %s", job_id, exc)
            record_api_call("download", ErrorKind.NETWORK.value)
            return ApiResult(ok=False, error=ApiError(ErrorKind.NETWORK, DOWNLOAD_ERROR_CODE, str(exc)))

        if response.status_code != 200:
            error = ApiError(
                _kind_for_status(response.status_code),
                DOWNLOAD_ERROR_CODE,
                "Failed to download the optimized image",
                status=response.status_code,
                retry_after=_retry_after(response.headers),
                data={"response_code": response.status_code},
            )
            record_api_call("download", error.kind.value)
            return ApiResult(ok=False, error=error)

        if not response.content:
            record_api_call("download", ErrorKind.UPSTREAM.value)
            return ApiResult(
                ok=False,
                error=ApiError(ErrorKind.UPSTREAM, DOWNLOAD_ERROR_CODE, "The download returned an empty response"),
            )

        record_api_call("download", "ok")
        return ApiResult(ok=True, data=response.content)

    # Internals

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        data: Optional[Dict[str, Any]] = None,
    ) -> ApiResult[Dict[str, Any]]:
        header = self.auth_header()
        if isinstance(header, ApiError):
            record_api_call(operation, header.kind.value)
            return ApiResult(ok=False, error=header)

        try:
            response = self._http.request(
                method,
                path,
                data=data,
                headers={self.AUTH_HEADER_NAME: header, "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Minification API %s request failed: %s", operation, exc)
            record_api_call(operation, ErrorKind.NETWORK.value)
            return ApiResult(ok=False, error=ApiError(ErrorKind.NETWORK, REQUEST_ERROR_CODE, str(exc)))

        result = self._prepare_response(response)
        record_api_call(operation, "ok" if result.ok else result.error.kind.value)
        return result

    def _prepare_response(self, response: httpx.Response) -> ApiResult[Dict[str, Any]]:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}
        data = body.get("data") if isinstance(body.get("data"), dict) else {}

        body_status = _as_int(body.get("status"))
        status = body_status if body_status is not None else response.status_code

        result: ApiResult[Dict[str, Any]] = ApiResult(
            ok=False,
            quota_exceeded=data.get("usage") == "exceeded",
            concurrency_limit=_as_int(data.get("concurrency_limit")),
        )

        if status == 200 and (body_status == 200 or data.get("id") is not None):
            result.ok = True
            result.data = body
            return result

        message = _message_for_status(status, body, data)
        result.error = ApiError(
            _kind_for_status(status),
            REQUEST_ERROR_CODE,
            message,
            status=400 if status == 200 else status,
            retry_after=_retry_after(response.headers),
        )
        return result
