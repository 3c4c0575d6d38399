# SPDX-License-Identifer: GPL-3.0-or-later

from contextlib import asynccontextmanager
from pathlib import Path

import httpx

from ...errors import TransportError
from ..downloader import Downloader
from ..response import DownloadResponse


class HTTPDownloader(Downloader):
    # Client errors worth a retry
    TRANSIENT_STATUSES = {408, 425, 429}

    def __post_init__(self):
        auth = None
        if self._settings.url.username and self._settings.url.password:
            auth = (self._settings.url.username, self._settings.url.password)

        base_url = str(self._settings.url)
        if not base_url.endswith("/"):
            base_url += "/"

        http_limits = httpx.Limits(
            max_connections=256,
            max_keepalive_connections=32,
            keepalive_expiry=5,
        )

        if self._settings.transport:
            mounts = None
            transport = self._settings.transport
        else:
            transport = None
            mounts = self._mounts(http_limits)

        self._httpx = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            timeout=httpx.Timeout(
                15,
                connect=30,
                read=60,
            ),
            follow_redirects=True,
            transport=transport,
            mounts=mounts,
            max_redirects=5,
            headers={
                "Accept-Encoding": "identity",
                "Cache-Control": "no-cache",
                "Pragma": "no-cache",
                "User-Agent": self._settings.user_agent,
            },
        )

    def _mounts(self, http_limits: httpx.Limits) -> dict[str, httpx.AsyncBaseTransport]:
        ssl_context = self._settings.tls.ssl_context()

        mounts: dict[str, httpx.AsyncBaseTransport] = {}
        for scheme in ("http://", "https://"):
            proxy = self._settings.proxy.for_scheme(scheme)

            mounts[scheme] = httpx.AsyncHTTPTransport(
                verify=ssl_context,
                http1=True,
                http2=not self._settings.http2_disable,
                limits=http_limits,
                proxy=httpx.Proxy(proxy) if proxy else None,
            )

        return mounts

    async def close(self):
        await self._httpx.aclose()

    def aiter_bytes(self, response: httpx.Response):
        async def func():
            try:
                async for chunk in response.aiter_bytes(chunk_size=self.BUFFER_SIZE):
                    yield chunk
            except httpx.HTTPError as ex:
                raise TransportError(
                    f"{ex.__class__.__qualname__} while reading {response.url}: {ex}"
                ) from ex

        return func

    @asynccontextmanager
    async def stream(self, source_path: Path):
        request = self._httpx.build_request("GET", str(source_path))

        try:
            response = await self._httpx.send(request, stream=True)
        except httpx.HTTPError as ex:
            yield DownloadResponse(
                _stream=None,
                error=f"{ex.__class__.__qualname__}: {str(ex)}",
            )
            return

        try:
            try:
                size = int(response.headers.get("Content-Length"))
            except (TypeError, ValueError):
                size = None

            transient = (
                response.is_server_error
                or response.status_code in self.TRANSIENT_STATUSES
            )

            yield DownloadResponse(
                missing=response.is_client_error and not transient,
                error=f"HTTP/{response.status_code}" if transient else None,
                status=response.status_code,
                size=size,
                _stream=self.aiter_bytes(response),
            )
        finally:
            await response.aclose()
