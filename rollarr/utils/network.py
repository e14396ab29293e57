"""
HTTP client factories shared by the Sonarr (httpx) and Plex (aiohttp) clients
"""
import aiohttp
import httpx

DEFAULT_TIMEOUT = 10.0


def create_aiohttp_session(timeout: float = DEFAULT_TIMEOUT, **kwargs) -> aiohttp.ClientSession:
    """aiohttp session with a total request timeout; kwargs go to ClientSession"""
    return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout), **kwargs)


def create_httpx_client(timeout: float = DEFAULT_TIMEOUT, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, **kwargs)
