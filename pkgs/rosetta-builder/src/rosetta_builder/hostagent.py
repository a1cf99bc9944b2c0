"""Lima host agent API client."""

import asyncio
import logging
import random
from functools import wraps
from json import JSONDecodeError
from pathlib import Path

import httpx

from .circuit_breaker import CircuitBreaker
from .exceptions import VMRuntimeError

logging.getLogger("httpcore.connection").setLevel(logging.ERROR)
logging.getLogger("httpcore.http11").setLevel(logging.ERROR)

logger = logging.getLogger(__name__)

HOST_AGENT_SOCKET_NAME = "ha.sock"


def retry_on_failure(max_retries=3, base_delay=0.1):
    """Decorator to retry operations with exponential backoff."""

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (httpx.ConnectError, httpx.TimeoutException):
                    if attempt == max_retries:
                        raise
                    delay = base_delay * (2**attempt) + random.uniform(0, 0.1)
                    await asyncio.sleep(delay)
            return None

        return wrapper

    return decorator


class HostAgentClient:
    """Client for the HTTP API Lima's host agent serves on its instance socket."""

    def __init__(self, instance_dir: Path):
        """Initialize the host agent client.

        Args:
            instance_dir: Lima instance directory holding ``ha.sock``
        """
        self.socket_path = instance_dir / HOST_AGENT_SOCKET_NAME
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker(
            "Lima host agent", failure_threshold=3, timeout=10.0
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client bound to the host agent socket."""
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(
                        transport=httpx.AsyncHTTPTransport(uds=str(self.socket_path)),
                        base_url="http://lima-hostagent",
                        timeout=httpx.Timeout(5.0, connect=2.0),
                    )
        return self._client

    async def close(self):
        """Close HTTP client and cleanup resources."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def info(self) -> dict | None:
        """Return the host agent's ``/v1/info`` document."""
        return await self._circuit_breaker.call(self._call_api, "/v1/info")

    async def is_serving(self) -> bool:
        """Check whether the host agent is up, without raising."""
        if not self.socket_path.exists():
            return False
        try:
            return await self.info() is not None
        except VMRuntimeError as e:
            logger.debug(f"Host agent not serving yet: {e}")
            return False

    @retry_on_failure(max_retries=2, base_delay=0.1)
    async def _request(self, endpoint: str) -> httpx.Response:
        client = await self._get_client()
        response = await client.get(endpoint)
        response.raise_for_status()
        return response

    async def _call_api(self, endpoint: str) -> dict | None:
        """Make a GET request to the host agent.

        Returns:
            dict | None: JSON response from the API, or None if no content
        """
        try:
            response = await self._request(endpoint)
        except httpx.HTTPError as e:
            raise VMRuntimeError(f"Lima host agent request failed: {e}")

        if not response.content:
            return None
        try:
            return response.json()
        except (ValueError, JSONDecodeError):
            return None
