import json
import logging
import time
import httpx
from typing import Any, Dict, Optional, Union
from ..config import settings
from ..errors import (
    AuthenticationFailed,
    ClassifiedError,
    ErrorCategory,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    RateLimited,
    RemoteHTTPError,
)
from ..models import Collection, GistMetadata
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)

# Categories that mean "this gist is not usable", as opposed to "try later"
UNUSABLE_CATEGORIES = (
    ErrorCategory.NOT_FOUND,
    ErrorCategory.PERMISSION,
    ErrorCategory.AUTHENTICATION,
    ErrorCategory.VALIDATION,
)


class GistClient:
    """
    Reads and writes the library as a single JSON file in a public GitHub gist.

    Every request goes through the retry policy; non-2xx responses become
    ClassifiedErrors carrying the HTTP status.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        data_filename: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.GIST_API_URL).rstrip('/')
        self.data_filename = data_filename or settings.GIST_DATA_FILENAME
        self.max_retries = settings.REMOTE_MAX_RETRIES if max_retries is None else max_retries
        self.retry_policy = retry_policy or RetryPolicy()

        headers = {"Accept": "application/vnd.github.v3+json"}
        token = token or settings.GITHUB_TOKEN
        if token:
            headers["Authorization"] = f"token {token}"

        self.client = httpx.AsyncClient(
            headers=headers,
            timeout=timeout or settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    # --- public API ---

    async def read(self, gist_id: str, timeout: Optional[float] = None) -> Collection:
        """Fetch and parse the library document. Private gists are refused."""
        gist_id = self._check_id(gist_id)

        async def attempt():
            gist = await self._get_gist(gist_id, timeout, "Failed to read gist")
            if not gist.get("public"):
                raise PermissionDenied("Gist must be public to read anonymously")
            return await self._extract_collection(gist.get("files") or {}, timeout)

        return await self.retry_policy.execute_with_retry(
            attempt,
            max_retries=self.max_retries,
            operation_type="read gist",
            operation_id=f"read-{gist_id}",
        )

    async def create(
        self,
        collection: Union[Collection, Dict[str, Any]],
        description: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        content = self._serialize(collection)
        body = {
            "description": description or settings.GIST_DESCRIPTION,
            "public": True,
            "files": {self.data_filename: {"content": content}},
        }

        async def attempt():
            resp = await self._send("POST", self.base_url, timeout, "Failed to create gist", json=body)
            return self._json(resp)["id"]

        gist_id = await self.retry_policy.execute_with_retry(
            attempt,
            max_retries=self.max_retries,
            operation_type="create gist",
        )
        logger.info(f"Created gist {gist_id}")
        return gist_id

    async def update(
        self,
        gist_id: str,
        collection: Union[Collection, Dict[str, Any]],
        timeout: Optional[float] = None,
    ):
        gist_id = self._check_id(gist_id)
        content = self._serialize(collection)
        body = {"files": {self.data_filename: {"content": content}}}

        async def attempt():
            await self._send("PATCH", self._url(gist_id), timeout, "Failed to update gist", json=body)

        await self.retry_policy.execute_with_retry(
            attempt,
            max_retries=self.max_retries,
            operation_type="update gist",
            operation_id=f"update-{gist_id}",
        )
        logger.info(f"Updated gist {gist_id}")

    async def exists(self, gist_id: str, timeout: Optional[float] = None) -> bool:
        """True if the gist exists and is public. Transient failures still raise."""
        if not isinstance(gist_id, str) or not gist_id.strip():
            return False
        gist_id = gist_id.strip()

        try:
            gist = await self.retry_policy.execute_with_retry(
                lambda: self._get_gist(gist_id, timeout, "Failed to check gist"),
                max_retries=self.max_retries,
                operation_type="check gist",
                operation_id=f"exists-{gist_id}",
            )
        except ClassifiedError as e:
            if e.category in UNUSABLE_CATEGORIES:
                return False
            raise
        return gist.get("public") is True

    async def get_metadata(self, gist_id: str, timeout: Optional[float] = None) -> GistMetadata:
        gist_id = self._check_id(gist_id)
        gist = await self.retry_policy.execute_with_retry(
            lambda: self._get_gist(gist_id, timeout, "Failed to get gist metadata"),
            max_retries=self.max_retries,
            operation_type="get gist metadata",
            operation_id=f"metadata-{gist_id}",
        )
        files = gist.get("files") or {}
        try:
            await self._extract_collection(files, timeout)
            has_payload = True
        except (NotFound, InvalidArgument):
            has_payload = False

        return GistMetadata(
            id=gist.get("id", gist_id),
            description=gist.get("description") or "",
            visibility="public" if gist.get("public") else "secret",
            created_at=gist.get("created_at"),
            updated_at=gist.get("updated_at"),
            file_names=list(files.keys()),
            has_payload=has_payload,
        )

    # --- helpers ---

    def _url(self, gist_id: str) -> str:
        return f"{self.base_url}/{gist_id}"

    @staticmethod
    def _check_id(gist_id: str) -> str:
        if not isinstance(gist_id, str) or not gist_id.strip():
            raise InvalidArgument("Invalid gist ID provided")
        return gist_id.strip()

    @staticmethod
    def _serialize(collection: Union[Collection, Dict[str, Any]]) -> str:
        # Validated before any network call
        if not isinstance(collection, Collection):
            collection = Collection.from_payload(collection)
        return collection.to_json()

    async def _get_gist(self, gist_id: str, timeout: Optional[float], action: str) -> Dict[str, Any]:
        resp = await self._send("GET", self._url(gist_id), timeout, action)
        return self._json(resp)

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            return resp.json()
        except ValueError as e:
            raise ClassifiedError(
                "Invalid JSON response from gist API",
                category=ErrorCategory.GIST_ERROR,
                http_status=resp.status_code,
            ) from e

    async def _send(
        self,
        method: str,
        url: str,
        timeout: Optional[float],
        action: str,
        **kwargs,
    ) -> httpx.Response:
        request_timeout = timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT
        try:
            resp = await self.client.request(method, url, timeout=request_timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ClassifiedError(
                f"Request timed out: {method} {url}",
                category=ErrorCategory.TIMEOUT,
                retryable=True,
            ) from e
        except httpx.TransportError as e:
            raise ClassifiedError(
                f"Network request failed: {e}",
                category=ErrorCategory.NETWORK,
                retryable=True,
            ) from e

        if resp.is_success:
            return resp
        raise self._error_for(resp, action)

    @staticmethod
    def _error_for(resp: httpx.Response, action: str) -> ClassifiedError:
        status = resp.status_code
        try:
            api_message = str(resp.json().get("message", ""))
        except (ValueError, AttributeError):
            api_message = ""

        rate_limited = (
            status == 429
            or (status == 403 and (
                resp.headers.get("X-RateLimit-Remaining") == "0"
                or "rate limit" in api_message.lower()
            ))
        )
        if rate_limited:
            retry_after = None
            reset = resp.headers.get("X-RateLimit-Reset")
            if resp.headers.get("Retry-After", "").isdigit():
                retry_after = float(resp.headers["Retry-After"])
            elif reset and reset.isdigit():
                retry_after = max(float(reset) - time.time(), 0.0)
            return RateLimited("API rate limit exceeded", http_status=status, retry_after=retry_after)

        if status == 401:
            return AuthenticationFailed("Authentication failed. Check the GitHub token.", http_status=status)
        if status == 403:
            return PermissionDenied("Access denied. Gist may be private.", http_status=status)
        if status == 404:
            return NotFound("Gist not found. Please check the gist ID.", http_status=status)
        if status == 422:
            return InvalidArgument("Invalid gist data format.", http_status=status)
        if status >= 500:
            return RemoteHTTPError(
                "GitHub service temporarily unavailable. Please try again later.",
                http_status=status,
            )
        return RemoteHTTPError(f"{action} (HTTP {status})", http_status=status)

    async def _file_content(self, file: Dict[str, Any], timeout: Optional[float]) -> Optional[str]:
        # The API truncates large files; the full text lives at raw_url.
        if file.get("truncated") and file.get("raw_url"):
            resp = await self._send("GET", file["raw_url"], timeout, "Failed to fetch gist file")
            return resp.text
        return file.get("content")

    async def _extract_collection(self, files: Dict[str, Any], timeout: Optional[float]) -> Collection:
        """
        Locate the library file: the canonical filename first, then any other
        *.json file holding an audiobooks array. A lone file of any name is
        also tried.
        """
        candidates = []
        if self.data_filename in files:
            candidates.append((self.data_filename, files[self.data_filename]))
        candidates.extend(
            (name, f) for name, f in files.items()
            if name != self.data_filename and name.endswith(".json")
        )
        if not candidates and len(files) == 1:
            candidates = list(files.items())

        unparseable = False
        for name, file in candidates:
            content = await self._file_content(file or {}, timeout)
            try:
                data = json.loads(content)
            except (TypeError, json.JSONDecodeError):
                logger.debug(f"Gist file {name} is not valid JSON")
                unparseable = True
                continue
            if name == self.data_filename or (
                isinstance(data, dict) and isinstance(data.get("audiobooks"), list)
            ):
                return Collection.from_payload(data)

        if unparseable:
            raise InvalidArgument("Invalid JSON format in gist data")
        raise NotFound("No audiobook data file found in gist")
