# tests/test_plex_server.py
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp import test_utils

from rollarr.services.plex_server import PlexError, PlexServer


@asynccontextmanager
async def plex_backend(routes):
    """Serve the given {path: handler} routes on a local port"""
    app = web.Application()
    for path, handler in routes.items():
        app.router.add_get(path, handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("")).rstrip("/")
    finally:
        await server.close()


def episode_session(title, season, episode, **extra):
    return {
        "type": "episode",
        "grandparentTitle": title,
        "grandparentKey": "/library/metadata/100",
        "parentIndex": season,
        "index": episode,
        "User": {"id": 1, "title": "alice"},
        **extra,
    }


@pytest.mark.asyncio
async def test_sessions_are_parsed_and_broken_ones_skipped():
    seen = {}

    async def sessions(request):
        seen["token"] = request.headers.get("X-Plex-Token")
        return web.json_response({"MediaContainer": {"Metadata": [
            episode_session("Severance", 1, 4),
            {"grandparentTitle": "No type"},
            {"type": "movie", "title": "Heat"},
        ]}})

    async with plex_backend({"/status/sessions": sessions}) as url:
        result = await PlexServer(url, "plex-token").get_active_sessions()

    assert seen["token"] == "plex-token"
    assert [s.type for s in result] == ["episode", "movie"]
    assert result[0].episode_label == "Severance S01E04"
    assert result[0].User.id == "1"


@pytest.mark.asyncio
async def test_no_sessions():
    async def sessions(request):
        return web.json_response({"MediaContainer": {"size": 0}})

    async with plex_backend({"/status/sessions": sessions}) as url:
        assert await PlexServer(url, "t").get_active_sessions() == []


@pytest.mark.asyncio
async def test_error_status_raises():
    async def sessions(request):
        return web.Response(status=401, text="Unauthorized")

    async with plex_backend({"/status/sessions": sessions}) as url:
        with pytest.raises(PlexError, match="401"):
            await PlexServer(url, "bad").get_active_sessions()


@pytest.mark.asyncio
async def test_unreachable_server_raises():
    async with plex_backend({}) as url:
        pass
    # The server is closed now, so the port refuses connections
    with pytest.raises(PlexError):
        await PlexServer(url, "t", timeout=2).get_active_sessions()


@pytest.mark.asyncio
async def test_show_metadata_flattens_first_item():
    seen = {}

    async def metadata(request):
        seen["query"] = dict(request.query)
        return web.json_response({"MediaContainer": {"Metadata": [{
            "guid": "plex://show/5d9c",
            "Guid": [{"id": "tvdb://371980"}, {"id": "imdb://tt11280740"}],
        }]}})

    async with plex_backend({"/library/metadata/100": metadata}) as url:
        result = await PlexServer(url, "t").get_show_metadata("100")

    assert seen["query"] == {"includeGuids": "1"}
    assert result.all_guids() == ["plex://show/5d9c", "tvdb://371980", "imdb://tt11280740"]


@pytest.mark.asyncio
async def test_show_metadata_without_items_is_none():
    async def metadata(request):
        return web.json_response({"MediaContainer": {"Metadata": []}})

    async with plex_backend({"/library/metadata/100": metadata}) as url:
        assert await PlexServer(url, "t").get_show_metadata("100", extended=True) is None
