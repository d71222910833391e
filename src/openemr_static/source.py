"""Preparation of the OpenEMR sources on the build host: checkout, production
dependencies, frontend assets and the PHAR archive.

The container and VM builds run the same steps via
:py:const:`~openemr_static.templates.PREPARE_OPENEMR_SH`.

"""

import asyncio
import io
import json
import os
import pathlib
import shutil
import tarfile

import aiofiles
import aiofiles.os
import git
from obs_package_update.util import CommandError
from obs_package_update.util import RunCommand

from openemr_static.data import OPENEMR_GIT_URL
from openemr_static.logger import LOGGER
from openemr_static.templates import CREATE_PHAR_PHP
from openemr_static.util import ensure_absent
from openemr_static.util import retry_async
from openemr_static.util import write_to_file

run_cmd = RunCommand(logger=LOGGER)

#: directories that are not shipped in the PHAR
EXCLUDED_DIRS = (".git", "tests", ".github", "docs")

#: file that php executes when the PHAR is run directly
PHAR_STUB = "interface/main/main.php"


async def clone_openemr(
    tag: str,
    dest: pathlib.Path,
    url: str = OPENEMR_GIT_URL,
    attempts: int = 3,
    delay: float = 5,
) -> git.Repo:
    """Shallow clones the OpenEMR repository at ``tag`` into ``dest``."""

    async def _clone() -> git.Repo:
        LOGGER.info("Cloning OpenEMR %s", tag)
        return await asyncio.to_thread(
            git.Repo.clone_from, url, dest, depth=1, branch=tag
        )

    async def _remove_partial_clone() -> None:
        await ensure_absent(dest)

    await ensure_absent(dest)
    return await retry_async(
        _clone,
        attempts=attempts,
        delay=delay,
        retry_on=(git.GitCommandError,),
        description=f"clone of OpenEMR {tag}",
        on_failure=_remove_partial_clone,
    )


def _export(repo: git.Repo, dest: pathlib.Path) -> None:
    archive = io.BytesIO()
    repo.archive(archive, treeish="HEAD", format="tar")
    archive.seek(0)
    with tarfile.open(fileobj=archive, mode="r:") as tar:
        tar.extractall(dest, filter="data")


async def export_tree(repo: git.Repo, dest: pathlib.Path) -> pathlib.Path:
    """Exports the checked out tree of ``repo`` without the git metadata into
    ``dest`` and drops :py:const:`EXCLUDED_DIRS`.

    """
    await ensure_absent(dest)
    await aiofiles.os.makedirs(dest)
    await asyncio.to_thread(_export, repo, dest)
    for excluded in EXCLUDED_DIRS:
        await ensure_absent(dest / excluded)
    return dest


async def install_composer_dependencies(
    app_dir: pathlib.Path, env: dict[str, str]
) -> None:
    if not (app_dir / "composer.json").exists():
        LOGGER.debug("No composer.json in %s, skipping composer", app_dir)
        return

    LOGGER.info("Installing production dependencies")
    try:
        await run_cmd(
            "composer install --ignore-platform-reqs --no-dev --optimize-autoloader "
            "--prefer-dist --no-interaction",
            cwd=str(app_dir),
            env={**os.environ, **env},
        )
    except CommandError as cmd_err:
        LOGGER.warning(
            "composer install had issues, continuing: %s",
            cmd_err.command_result.stderr.strip(),
        )


async def _has_build_script(app_dir: pathlib.Path) -> bool:
    async with aiofiles.open(app_dir / "package.json", "r") as package_json:
        try:
            scripts = json.loads(await package_json.read()).get("scripts", {})
        except json.JSONDecodeError:
            return False
    return "build" in scripts


async def build_frontend(app_dir: pathlib.Path, env: dict[str, str]) -> None:
    """Installs the npm dependencies and compiles the CSS and JavaScript
    assets.

    Raises:
        :py:class:`RuntimeError`: if no build step succeeded

    """
    if not (app_dir / "package.json").exists():
        LOGGER.debug("No package.json in %s, skipping the frontend build", app_dir)
        return

    async def run(cmd: str) -> bool:
        res = await run_cmd(
            cmd, cwd=str(app_dir), env={**os.environ, **env}, raise_on_error=False
        )
        return res.exit_code == 0

    LOGGER.info("Building frontend assets")
    if not await run("npm install -g --yes napa gulp-cli"):
        LOGGER.warning("Failed to install the global npm dependencies")

    if not await run("npm ci"):
        LOGGER.warning("npm ci had issues, trying npm install")
        if not await run("npm install"):
            LOGGER.warning("npm install had issues as well, continuing")

    built = False
    if await _has_build_script(app_dir):
        built = await run("npm run build")
    elif shutil.which("gulp") and any(
        (app_dir / name).exists() for name in ("gulpfile.js", "Gulpfile.js")
    ):
        built = await run("gulp")

    if not built:
        raise RuntimeError(
            "Frontend build failed, the CSS and JavaScript assets were not compiled"
        )


async def create_phar(
    php: str | pathlib.Path,
    app_dir: pathlib.Path,
    phar_path: pathlib.Path,
    work_dir: pathlib.Path,
) -> pathlib.Path:
    """Packages ``app_dir`` into the gzip compressed PHAR ``phar_path``."""
    builder = work_dir / "create-phar.php"
    await write_to_file(builder, CREATE_PHAR_PHP.render(stub=PHAR_STUB))

    LOGGER.info("Creating PHAR archive %s", phar_path)
    await run_cmd(f"{php} -d phar.readonly=0 {builder} {phar_path} {app_dir}")

    if not await aiofiles.os.path.isfile(phar_path):
        raise RuntimeError(f"Failed to create the PHAR {phar_path}")
    return phar_path


async def prepare_openemr(
    tag: str,
    work_dir: pathlib.Path,
    env: dict[str, str],
    php: str = "php",
) -> pathlib.Path:
    """Runs all steps from the checkout to the PHAR in ``work_dir`` and
    returns the path to the PHAR.

    """
    repo = await clone_openemr(tag, work_dir / "openemr-source")
    app_dir = await export_tree(repo, work_dir / "openemr-phar")
    await install_composer_dependencies(app_dir, env)
    await build_frontend(app_dir, env)
    return await create_phar(php, app_dir, work_dir / "openemr.phar", work_dir)
