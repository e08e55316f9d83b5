import logging
from typing import Any, Callable, Generic, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransientHTTPError
from .page_cache import PageKey

log = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_STATUS = (429, 500, 502, 503, 504)


class HttpArtifactGenerator(Generic[T]):
    """ArtifactGenerator that asks a remote service to build one page artifact.

    POSTs ``{"document_id", "page"}`` to ``url`` and parses the JSON reply with
    ``parse``. 429/5xx and transport errors are retried with exponential
    backoff; other HTTP errors propagate on the first attempt.
    """

    def __init__(
        self,
        url: str,
        parse: Callable[[Any], T],
        *,
        timeout: float = 30.0,
        max_retries: int = 5,
        wait=None,
        name: str = "artifact",
    ) -> None:
        self.url = url
        self.name = name
        self._parse = parse
        self._timeout = timeout
        self._max_retries = max_retries
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=10)

    async def _post_once(self, key: PageKey) -> T:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                self.url, json={"document_id": key.document_id, "page": key.page}
            )
        if resp.status_code in _TRANSIENT_STATUS:
            log.warning(
                "generator.retry kind=%s key=%s status=%d retry_after=%s",
                self.name,
                key,
                resp.status_code,
                resp.headers.get("Retry-After"),
            )
            raise TransientHTTPError(f"Upstream error {resp.status_code}")
        resp.raise_for_status()
        return self._parse(resp.json())

    async def __call__(self, key: PageKey) -> T:
        async for attempt in AsyncRetrying(
            wait=self._wait,
            stop=stop_after_attempt(self._max_retries),
            retry=retry_if_exception_type((TransientHTTPError, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await self._post_once(key)
        raise AssertionError("unreachable")  # pragma: no cover
