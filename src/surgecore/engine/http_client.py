"""
aiohttp-backed request executor for the system under test.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import urljoin

import aiohttp
import structlog

from surgecore.exceptions import RequestError
from surgecore.protocols import ErrorCategory, ExecutorResponse

if TYPE_CHECKING:
    from surgecore.config.config import EngineConfig
    from surgecore.definition import TestEndpoint

logger = structlog.get_logger(__name__)


class HttpExecutor:
    """Issues each TestEndpoint exactly as described: method, URL, headers and body.

    Timeouts are enforced per attempt by the dispatcher, so the session itself
    carries no total timeout.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        connection_limit: int = 0,
        user_agent: str = "surgecore/0.1",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url
        self.connection_limit = connection_limit
        self.user_agent = user_agent
        self.session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config: EngineConfig) -> "HttpExecutor":
        return cls(config.base_url, connection_limit=config.connection_limit, user_agent=config.user_agent)

    async def initialize(self) -> None:
        if self.session is None:
            connector = aiohttp.TCPConnector(
                limit=self.connection_limit,
                ttl_dns_cache=30,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=None),
                headers={"User-Agent": self.user_agent},
            )
            self._owns_session = True
            logger.info("HTTP executor session initialized", base_url=self.base_url)

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            logger.info("HTTP executor closed")
        self.session = None

    async def __aenter__(self) -> "HttpExecutor":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def resolve(self, url: str) -> str:
        if self.base_url and not url.startswith(("http://", "https://")):
            return urljoin(self.base_url.rstrip("/") + "/", url.lstrip("/"))
        return url

    async def execute(self, endpoint: TestEndpoint) -> ExecutorResponse:
        if self.session is None:
            raise RuntimeError("HTTP executor not initialized. Call initialize() first.")

        kwargs: Dict[str, Any] = {"headers": endpoint.headers or None}
        if endpoint.body is not None:
            if isinstance(endpoint.body, (str, bytes)):
                kwargs["data"] = endpoint.body
            else:
                kwargs["json"] = endpoint.body

        url = self.resolve(endpoint.url)
        try:
            async with self.session.request(endpoint.method, url, **kwargs) as response:
                body = await response.read()
                return ExecutorResponse(status=response.status, size=len(body))
        except aiohttp.ClientError as e:
            raise RequestError(ErrorCategory.TRANSPORT, f"{type(e).__name__}: {e}") from e
