"""Driving static-php-cli (spc), which compiles the static PHP binaries and
the MicroSFX that the PHAR is appended to.

"""

import asyncio
import os
import pathlib
import tarfile
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field

import aiofiles.os
from obs_package_update.util import CommandError
from obs_package_update.util import RunCommand

from openemr_static.download import download_file
from openemr_static.logger import LOGGER
from openemr_static.target import spc_arch
from openemr_static.util import make_executable
from openemr_static.util import retry_async

#: SAPIs that spc builds by default
DEFAULT_SAPIS = ("cli", "cgi", "fpm", "micro")


def spc_release_url(repo: str, tag: str, os_name: str, machine: str) -> str:
    """URL of the prebuilt spc binary of the release ``tag`` in the GitHub
    repository ``repo`` (``owner/name``).

    """
    return (
        f"https://github.com/{repo}/releases/download/{tag}/"
        f"spc-{os_name}-{spc_arch(machine)}.tar.gz"
    )


def _extract(archive: pathlib.Path, dest: pathlib.Path) -> None:
    with tarfile.open(archive, "r:gz") as tar:
        tar.extractall(dest, filter="data")


async def install_spc_release(
    repo: str,
    tag: str,
    os_name: str,
    machine: str,
    dest: pathlib.Path,
    github_token: str | None = None,
) -> pathlib.Path:
    """Downloads and unpacks the prebuilt spc into ``dest``.

    Raises:
        :py:class:`RuntimeError`: if the archive contains no ``spc`` binary

    """
    url = spc_release_url(repo, tag, os_name, machine)
    archive = await download_file(
        url, dest / url.rsplit("/", 1)[-1], github_token=github_token
    )
    await asyncio.to_thread(_extract, archive, dest)

    for candidate in (dest / "spc" / "spc", dest / "spc"):
        if await aiofiles.os.path.isfile(candidate):
            await make_executable(candidate)
            LOGGER.info("Installed static-php-cli %s to %s", tag, candidate)
            return candidate

    raise RuntimeError(f"No spc binary found in {url}")


def find_build_output(build_dir: pathlib.Path, name: str) -> pathlib.Path | None:
    """Looks for the file ``name`` that ``spc build`` produced below
    ``build_dir``: first in the ``buildroot/bin`` directories, then anywhere.

    """
    for candidate in (
        build_dir / "buildroot" / "bin" / name,
        build_dir / "static-php-cli" / "buildroot" / "bin" / name,
    ):
        if candidate.is_file():
            return candidate

    for candidate in sorted(build_dir.rglob(name)):
        if candidate.is_file():
            return candidate
    return None


@dataclass
class SpcRunner:
    spc_bin: pathlib.Path

    #: directory in which spc creates ``buildroot/``, ``source/``, ...
    cwd: pathlib.Path

    env: dict[str, str] = field(default_factory=dict)

    _run_cmd: RunCommand = field(default_factory=lambda: RunCommand(logger=LOGGER))

    async def _run(self, args: str, raise_on_error: bool = True):
        return await self._run_cmd(
            f"{self.spc_bin} {args}",
            cwd=str(self.cwd),
            env={**os.environ, **self.env},
            raise_on_error=raise_on_error,
        )

    async def doctor(self) -> None:
        res = await self._run("doctor --auto-fix", raise_on_error=False)
        if res.exit_code != 0:
            LOGGER.warning("spc doctor reported issues, continuing anyway")

    async def download(
        self, php_version: str, extensions: str, attempts: int = 3
    ) -> None:
        """Downloads the PHP and library sources, waiting 30 seconds longer
        after each failed attempt.

        """

        async def _download() -> None:
            await self._run(
                f"download --with-php={php_version} --for-extensions={extensions} --retry 5"
            )

        await retry_async(
            _download,
            attempts=attempts,
            delay=30,
            backoff="linear",
            retry_on=(CommandError,),
            description="download of the PHP sources",
        )

    async def build(
        self, extensions: str, sapis: Iterable[str] = DEFAULT_SAPIS
    ) -> None:
        flags = " ".join(f"--build-{sapi}" for sapi in sapis)
        LOGGER.info("Building static PHP (%s), this takes a while", flags)
        await self._run(f"build {flags} {extensions}")

    async def combine(
        self,
        phar: pathlib.Path,
        output: pathlib.Path,
        micro_sfx: pathlib.Path | None = None,
        php: str | None = None,
        memory_limit: str | None = None,
    ) -> pathlib.Path:
        """Appends ``phar`` to the MicroSFX and writes the executable to
        ``output``.

        """
        cmd = f"micro:combine {phar} -O {output}"
        if micro_sfx:
            cmd += f" --with-micro={micro_sfx}"
        if php or memory_limit:
            await self._run_cmd(
                f"{php or 'php'} -d memory_limit={memory_limit or '4096M'} "
                f"{self.spc_bin} {cmd}",
                cwd=str(self.cwd),
                env={**os.environ, **self.env},
            )
        else:
            await self._run(cmd)

        if not await aiofiles.os.path.isfile(output):
            raise RuntimeError(f"Failed to create {output}")
        await make_executable(output)
        return output
