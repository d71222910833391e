"""Downloads of release archives, VM images and the PHP release lookup."""

import asyncio
import lzma
import pathlib
import urllib.parse

import aiofiles
import aiofiles.os
import aiohttp
import requests

from openemr_static.logger import LOGGER
from openemr_static.util import ensure_absent
from openemr_static.util import retry_async

_CHUNK_SIZE = 1024 * 1024

PHP_RELEASES_URL = "https://www.php.net/releases/index.php"


def _headers_for(url: str, github_token: str | None) -> dict[str, str]:
    headers = {"User-Agent": "openemr-static"}
    host = urllib.parse.urlparse(url).hostname or ""
    if github_token and (host == "github.com" or host.endswith(".github.com")):
        headers["Authorization"] = f"Bearer {github_token}"
    return headers


async def download_file(
    url: str,
    dest: pathlib.Path,
    attempts: int = 3,
    delay: float = 5,
    github_token: str | None = None,
    timeout: float | None = None,
) -> pathlib.Path:
    """Downloads ``url`` to ``dest``, retrying ``attempts`` times.

    The data are streamed into ``dest.part`` which is renamed once the
    download completed, so that an interrupted download never leaves a
    truncated ``dest`` behind.

    """
    partial = dest.with_name(dest.name + ".part")
    headers = _headers_for(url, github_token)

    async def _download() -> pathlib.Path:
        LOGGER.info("Downloading %s", url)
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(
            headers=headers, timeout=client_timeout
        ) as session:
            async with session.get(url) as resp:
                if resp.status >= 300:
                    raise RuntimeError(
                        f"Downloading {url} failed with HTTP status {resp.status}"
                    )
                async with aiofiles.open(partial, "wb") as out:
                    async for chunk in resp.content.iter_chunked(_CHUNK_SIZE):
                        await out.write(chunk)

        await aiofiles.os.replace(partial, dest)
        return dest

    await aiofiles.os.makedirs(dest.parent, exist_ok=True)
    try:
        return await retry_async(
            _download,
            attempts=attempts,
            delay=delay,
            retry_on=(aiohttp.ClientError, asyncio.TimeoutError, RuntimeError),
            description=f"download of {url}",
        )
    finally:
        await ensure_absent(partial)


def _decompress_xz(src: pathlib.Path, dest: pathlib.Path) -> None:
    with lzma.open(src, "rb") as compressed, open(dest, "wb") as out:
        while chunk := compressed.read(_CHUNK_SIZE):
            out.write(chunk)


async def decompress_xz(src: pathlib.Path, dest: pathlib.Path | None = None) -> pathlib.Path:
    """Decompresses the ``.xz`` file ``src`` to ``dest`` (``src`` without the
    suffix by default) and removes ``src``.

    """
    if dest is None:
        if src.suffix != ".xz":
            raise ValueError(f"{src} does not have the .xz suffix")
        dest = src.with_suffix("")
    LOGGER.info("Extracting %s", src)
    try:
        await asyncio.to_thread(_decompress_xz, src, dest)
    except lzma.LZMAError:
        await ensure_absent(dest)
        raise
    await ensure_absent(src)
    return dest


def resolve_php_release(major_minor: str) -> str:
    """Returns the latest released version of the PHP ``major_minor`` branch
    according to php.net, or ``major_minor.0`` if it cannot be determined.

    """
    if major_minor.count(".") >= 2:
        return major_minor

    try:
        resp: requests.Response = requests.get(
            PHP_RELEASES_URL,
            params={"json": "", "version": major_minor},
            timeout=30,
        )
        resp.raise_for_status()
        version = resp.json().get("version")
        if isinstance(version, str) and version.startswith(major_minor):
            LOGGER.info("Latest PHP %s release is %s", major_minor, version)
            return version
        LOGGER.warning("php.net returned no release for PHP %s", major_minor)
    except (requests.RequestException, ValueError) as exc:
        LOGGER.warning("Could not query the PHP %s release: %s", major_minor, exc)

    return f"{major_minor}.0"
