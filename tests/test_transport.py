import hashlib

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import PLATFORM
from engine_cache import build_engine_manager
from engine_cache.api.transport import AiohttpTransport, HttpTransport
from engine_cache.exceptions import NetworkError
from engine_cache.models.config import EngineCacheConfig

PAYLOAD = b"\x00engine\xff" * 4096


def build_app() -> web.Application:
    async def manifest(request: web.Request) -> web.Response:
        package_url = str(request.url.with_path("/Robust_7.0.0.zip"))
        return web.json_response(
            {
                "schemaVersion": 1,
                "engines": {
                    "7.0.0": {
                        "platforms": {
                            PLATFORM: {
                                "url": package_url,
                                "sha256": hashlib.sha256(PAYLOAD).hexdigest(),
                                "size": len(PAYLOAD),
                            }
                        }
                    }
                },
            }
        )

    async def package(request: web.Request) -> web.Response:
        return web.Response(body=PAYLOAD)

    async def not_json(request: web.Request) -> web.Response:
        return web.Response(text="<html>maintenance</html>")

    app = web.Application()
    app.router.add_get("/manifest.json", manifest)
    app.router.add_get("/Robust_7.0.0.zip", package)
    app.router.add_get("/broken.json", not_json)
    return app


def test_aiohttp_transport_satisfies_protocol():
    assert isinstance(AiohttpTransport(), HttpTransport)


@pytest.mark.asyncio
async def test_aiohttp_transport_against_real_server():
    async with TestServer(build_app()) as server:
        transport = AiohttpTransport(max_connections=2)
        try:
            document = await transport.get_json(str(server.make_url("/manifest.json")))
            assert "7.0.0" in document["engines"]

            async with transport.stream(str(server.make_url("/Robust_7.0.0.zip"))) as response:
                assert response.total_bytes == len(PAYLOAD)
                body = b"".join([chunk async for chunk in response.iter_chunks(1024)])
            assert body == PAYLOAD

            with pytest.raises(NetworkError):
                async with transport.stream(str(server.make_url("/missing.zip"))):
                    pass
            with pytest.raises(NetworkError):
                await transport.get_json(str(server.make_url("/broken.json")))
        finally:
            await transport.close()


@pytest.mark.asyncio
async def test_engine_installed_over_http(tmp_path):
    async with TestServer(build_app()) as server:
        config = EngineCacheConfig(
            manifest_url=str(server.make_url("/manifest.json")),
            engines_dir=str(tmp_path / "engines"),
            platform=PLATFORM,
        )
        async with build_engine_manager(config) as manager:
            assert await manager.download_engine_if_necessary("7.0.0") is True
            path = manager.get_engine_path("7.0.0")

        assert (path / "Robust_7.0.0.zip").read_bytes() == PAYLOAD
        assert manager._transport._session is None
