import asyncio
import os
import pathlib
import shutil
import socket
import stat
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterable
from typing import Literal
from typing import TypeVar

import aiofiles
import aiofiles.os

from openemr_static.logger import LOGGER

_T = TypeVar("_T")


async def write_to_file(fname: str | pathlib.Path, contents: str | bytes) -> None:
    if isinstance(contents, str):
        async with aiofiles.open(fname, "w") as f:
            await f.write(contents)
    elif isinstance(contents, bytes):
        async with aiofiles.open(fname, "bw") as f:
            await f.write(contents)
    else:
        raise TypeError(
            f"Invalid type of contents: {type(contents)}, expected string or bytes"
        )


async def ensure_absent(path: str | pathlib.Path) -> None:
    """Removes the file or directory with the given ``path`` if it exists or
    does nothing.

    Directories are removed recursively.

    Raises:
        :py:class:`ValueError`: if ``path`` is neither a file nor a directory

    """
    if await aiofiles.os.path.islink(path):
        await aiofiles.os.remove(path)
    elif await aiofiles.os.path.exists(path):
        if await aiofiles.os.path.isfile(path):
            await aiofiles.os.remove(path)
        elif await aiofiles.os.path.isdir(path):
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            raise ValueError(f"{path} is neither a file nor a directory")


async def make_executable(path: str | pathlib.Path) -> None:
    """Adds the executable bits to ``path`` for everyone that may read it."""
    mode = (await aiofiles.os.stat(path)).st_mode
    await asyncio.to_thread(
        os.chmod, path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
    )


def is_executable(path: str | pathlib.Path) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


async def retry_async(
    func: Callable[[], Awaitable[_T]],
    attempts: int = 3,
    delay: float = 5,
    backoff: Literal["linear", "fixed"] = "fixed",
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    on_failure: Callable[[], Awaitable[None]] | None = None,
) -> _T:
    """Awaits ``func()`` up to ``attempts`` times.

    After the n-th failed attempt the coroutine sleeps ``delay`` seconds
    (``backoff="fixed"``) or ``n * delay`` seconds (``backoff="linear"``).
    ``on_failure`` is awaited after each failed attempt that is going to be
    retried, e.g. to remove a partial download. The exception of the last
    attempt is re-raised.

    """
    if attempts < 1:
        raise ValueError(f"Invalid number of attempts: {attempts}")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except retry_on as exc:
            if attempt >= attempts:
                LOGGER.error(
                    "%s failed after %d attempts", description.capitalize(), attempts
                )
                raise

            wait = delay * attempt if backoff == "linear" else delay
            LOGGER.warning(
                "%s failed (attempt %d/%d): %s, retrying in %s seconds",
                description.capitalize(),
                attempt,
                attempts,
                exc,
                wait,
            )
            if on_failure:
                await on_failure()
            await asyncio.sleep(wait)


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(1)
        return sock.connect_ex((host, port)) == 0


def find_free_port(start: int, end: int | None = None) -> int:
    """Returns the first port in the range ``[start, end]`` on which nothing
    listens. Without ``end`` the next 100 ports are searched.

    Raises:
        :py:class:`RuntimeError`: if every port of the range is taken

    """
    last = end if end is not None else start + 100
    for port in range(start, last + 1):
        if not is_port_in_use(port):
            return port
    raise RuntimeError(f"No free port found between {start} and {last}")


async def wait_for_port(host: str, port: int, timeout: float = 60) -> None:
    """Waits until a TCP connection to ``host:port`` can be established.

    Raises:
        :py:class:`asyncio.TimeoutError`: if the port did not open in time

    """

    async def _poll() -> None:
        while True:
            try:
                _, writer = await asyncio.open_connection(host, port)
                writer.close()
                await writer.wait_closed()
                return
            except OSError:
                await asyncio.sleep(1)

    await asyncio.wait_for(_poll(), timeout=timeout)


def require_tools(tools: Iterable[str], hints: dict[str, str] | None = None) -> None:
    """Ensures that every executable in ``tools`` is in ``$PATH``.

    Raises:
        :py:class:`RuntimeError`: listing all missing tools together with the
            install hint from ``hints``

    """
    hints = hints or {}
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        lines = [
            f"  {tool}" + (f": {hints[tool]}" if tool in hints else "")
            for tool in missing
        ]
        raise RuntimeError("Required tools are not installed:\n" + "\n".join(lines))


async def copy_artifact(
    src: pathlib.Path, dest_dirs: Iterable[pathlib.Path]
) -> list[pathlib.Path]:
    """Copies ``src`` into each directory in ``dest_dirs``, preserving the
    permissions. Copying a file onto itself is skipped.

    """
    copies = []
    for dest_dir in dest_dirs:
        await aiofiles.os.makedirs(dest_dir, exist_ok=True)
        dest = dest_dir / src.name
        if dest.resolve() != src.resolve():
            if src.is_dir():
                await ensure_absent(dest)
                await asyncio.to_thread(shutil.copytree, src, dest, symlinks=True)
            else:
                await asyncio.to_thread(shutil.copy2, src, dest)
        copies.append(dest)
    return copies


def human_size(path: pathlib.Path) -> str:
    """Size of a file or the summed size of a directory tree, formatted like
    :command:`du -h`.

    """
    if path.is_dir():
        size = sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    else:
        size = path.stat().st_size

    value = float(size)
    for unit in ("B", "K", "M", "G"):
        if value < 1024:
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}T"
