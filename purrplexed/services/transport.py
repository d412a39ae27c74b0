"""
Transport layer between the analysis orchestrator and the backend.

The orchestrator only talks to the ``AnalysisTransport`` interface. Two
implementations exist:
1. HTTPAnalysisTransport - httpx-backed, used in production
2. MockAnalysisTransport - canned payloads for demos and tests
   (see mock_transport.py)

No retries happen at this layer; a non-2xx status is returned to the caller,
only a missing response raises.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from purrplexed.config import settings
from purrplexed.services.exceptions import NetworkError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class AnalysisTransport(ABC):
    """Low-level I/O primitive used by the orchestrator."""

    @abstractmethod
    async def post_json(
        self, path: str, body: dict, headers: Optional[dict] = None
    ) -> TransportResponse:
        """POST a JSON body. Raises NetworkError only when no usable response arrives."""

    @abstractmethod
    async def post_multipart(
        self,
        path: str,
        fields: dict,
        file_field: str,
        file_bytes: bytes,
        filename: str,
        mime_type: str,
    ) -> TransportResponse:
        """POST a multipart form with a single file part."""

    @abstractmethod
    def stream_lines(
        self, path: str, body: dict, headers: Optional[dict] = None
    ) -> AsyncIterator[str]:
        """
        POST a JSON body and yield response lines as they arrive.

        Runs until the server closes the stream or the consumer stops
        iterating. Non-2xx responses yield nothing and raise after the body
        has been read (see HTTPAnalysisTransport.stream_lines).
        """

    async def aclose(self) -> None:
        """Release network resources."""


class StreamStatusError(Exception):
    """Non-2xx status received on a streamed request."""

    def __init__(self, response: TransportResponse):
        super().__init__(f"Stream request failed with HTTP {response.status_code}")
        self.response = response


class HTTPAnalysisTransport(AnalysisTransport):
    """httpx-backed transport against the configured backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.api_token
        # Read/write/pool use the overall timeout, connect is kept short
        http_timeout = httpx.Timeout(
            timeout=timeout or settings.request_timeout,
            connect=connect_timeout or settings.connect_timeout,
        )
        self.client = httpx.AsyncClient(
            base_url=self.base_url, timeout=http_timeout, transport=transport
        )

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        if extra:
            headers.update(extra)
        return headers

    async def post_json(
        self, path: str, body: dict, headers: Optional[dict] = None
    ) -> TransportResponse:
        logger.info("POST %s%s", self.base_url, path)
        start_time = time.monotonic()
        try:
            response = await self.client.post(
                path, json=body, headers=self._headers(headers)
            )
        except httpx.RequestError as e:
            logger.error("POST %s failed: %s", path, e)
            raise NetworkError(f"Request to {path} failed") from e

        logger.info(
            "POST %s status=%d duration=%.3fs",
            path,
            response.status_code,
            time.monotonic() - start_time,
        )
        logger.debug("Raw response (path=%s): %s", path, response.text)
        return TransportResponse(response.status_code, response.content)

    async def post_multipart(
        self,
        path: str,
        fields: dict,
        file_field: str,
        file_bytes: bytes,
        filename: str,
        mime_type: str,
    ) -> TransportResponse:
        logger.info("POST %s%s (multipart, %d bytes)", self.base_url, path, len(file_bytes))
        start_time = time.monotonic()
        try:
            response = await self.client.post(
                path,
                data=fields,
                files={file_field: (filename, file_bytes, mime_type)},
                headers=self._headers(),
            )
        except httpx.RequestError as e:
            logger.error("Multipart POST %s failed: %s", path, e)
            raise NetworkError(f"Upload to {path} failed") from e

        logger.info(
            "POST %s status=%d duration=%.3fs",
            path,
            response.status_code,
            time.monotonic() - start_time,
        )
        logger.debug("Raw upload response: %s", response.text)
        return TransportResponse(response.status_code, response.content)

    async def stream_lines(
        self, path: str, body: dict, headers: Optional[dict] = None
    ) -> AsyncIterator[str]:
        """
        Yield decoded lines of a streamed response.

        Raises:
            NetworkError: Connection failed or dropped mid-stream
            StreamStatusError: Response status was not 2xx
        """
        logger.info("POST %s%s (stream)", self.base_url, path)
        request_headers = self._headers({"Accept": "text/event-stream", **(headers or {})})
        try:
            async with self.client.stream(
                "POST", path, json=body, headers=request_headers
            ) as response:
                if not 200 <= response.status_code < 300:
                    content = await response.aread()
                    raise StreamStatusError(
                        TransportResponse(response.status_code, content)
                    )
                async for line in response.aiter_lines():
                    yield line
        except httpx.RequestError as e:
            logger.error("Stream POST %s failed: %s", path, e)
            raise NetworkError(f"Stream from {path} failed") from e

    async def aclose(self) -> None:
        await self.client.aclose()
