import pathlib

import aiohttp
import pytest

from openemr_static.fileserver import FileServer
from openemr_static.util import find_free_port
from openemr_static.util import is_port_in_use


@pytest.mark.asyncio
async def test_serves_the_directory(tmp_path: pathlib.Path):
    (tmp_path / "openemr-v7_0_4.phar").write_bytes(b"phar contents")
    port = find_free_port(18080, 19080)

    async with FileServer(tmp_path, port, host="127.0.0.1") as server:
        assert server.url == f"http://127.0.0.1:{port}"
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{server.url}/openemr-v7_0_4.phar") as resp:
                assert resp.status == 200
                assert await resp.read() == b"phar contents"

            async with session.get(f"{server.url}/missing") as resp:
                assert resp.status == 404

    assert not is_port_in_use(port)
