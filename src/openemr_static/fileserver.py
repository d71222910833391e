import pathlib

from aiohttp import web

from openemr_static.logger import LOGGER


class FileServer:
    """Serves the files in ``directory`` over HTTP while it is entered as
    an async context manager, so that a VM can ``fetch`` them from
    ``http://10.0.2.2:<port>/``.

    """

    def __init__(
        self, directory: pathlib.Path, port: int, host: str = "0.0.0.0"
    ) -> None:
        self.directory = directory
        self.port = port
        self.host = host
        self._runner: web.AppRunner | None = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    async def start(self) -> None:
        app = web.Application()
        app.router.add_static("/", self.directory, show_index=True)
        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        await web.TCPSite(self._runner, self.host, self.port).start()
        LOGGER.info("Serving %s on port %d", self.directory, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            LOGGER.debug("Stopped the file server on port %d", self.port)

    async def __aenter__(self) -> "FileServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
