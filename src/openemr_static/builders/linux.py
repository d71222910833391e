import asyncio
import pathlib
import time
from dataclasses import dataclass

import aiofiles.os
from obs_package_update.util import CommandError
from obs_package_update.util import RunCommand

from openemr_static.builders import Builder
from openemr_static.data import OPENEMR_GIT_URL
from openemr_static.download import resolve_php_release
from openemr_static.logger import LOGGER
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import BuildManifest
from openemr_static.source import PHAR_STUB
from openemr_static.templates import CREATE_PHAR_PHP
from openemr_static.templates import DOCKER_BUILD_INTERNAL
from openemr_static.templates import DOCKERFILE_BUILD
from openemr_static.templates import PREPARE_OPENEMR_SH
from openemr_static.util import require_tools
from openemr_static.util import write_to_file

run_cmd = RunCommand(logger=LOGGER)

#: packages of the build image
BUILD_IMAGE_PACKAGES = [
    "build-essential",
    "git",
    "curl",
    "wget",
    "ca-certificates",
    "libpng-dev",
    "libjpeg-dev",
    "libfreetype6-dev",
    "libxml2-dev",
    "libzip-dev",
    "libmagickwand-dev",
    "pkg-config",
    "composer",
    "nodejs",
    "npm",
    "bison",
    "re2c",
    "flex",
    "autopoint",
    "cmake",
    "patchelf",
    "sudo",
    "libssl-dev",
    "libcurl4-openssl-dev",
    "libonig-dev",
    "libsqlite3-dev",
    "libicu-dev",
]

#: configure flags of the php in the build image, which only runs composer
#: and box
BUILD_IMAGE_PHP_CONFIGURE_FLAGS = [
    "--enable-cli",
    "--disable-cgi",
    "--with-curl",
    "--with-openssl",
    "--with-zlib",
    "--with-zip",
    "--enable-mbstring",
    "--with-onig",
    "--enable-xml",
    "--enable-dom",
    "--enable-intl",
    "--enable-phar",
    "--enable-opcache",
    "--without-pear",
]

#: memory limit of the build container
CONTAINER_MEMORY = "16g"

#: logs of static-php-cli that are copied out of a failed build container
SPC_LOGS = ("spc.output.log", "spc.shell.log")


@dataclass
class LinuxBuilder(Builder):
    """Builds inside a docker container of the target's platform."""

    @property
    def image_name(self) -> str:
        return f"openemr-builder-{self.arch}:latest"

    def render_build_script(self) -> str:
        return DOCKER_BUILD_INTERNAL.render(
            arch=self.arch,
            prepare_openemr=PREPARE_OPENEMR_SH.render(
                build_dir="/build",
                openemr_git_url=OPENEMR_GIT_URL,
                filter_npm_output=False,
                create_phar_php=CREATE_PHAR_PHP.render(stub=PHAR_STUB),
            ),
        )

    async def _check_docker(self) -> None:
        require_tools(["docker"], {"docker": "https://docs.docker.com/engine/install/"})
        if (await run_cmd("docker info", raise_on_error=False)).exit_code != 0:
            raise RuntimeError(
                "Docker is not running, please start Docker Desktop or the docker daemon"
            )

    async def _build_image(self, work_dir: pathlib.Path) -> None:
        php_version_full = await asyncio.to_thread(
            resolve_php_release, self.settings.php_version
        )
        await write_to_file(
            work_dir / "Dockerfile.build",
            DOCKERFILE_BUILD.render(
                base_image=self.settings.docker_base_image,
                php_version_full=php_version_full,
                php_version=self.settings.php_version,
                packages=BUILD_IMAGE_PACKAGES,
                configure_flags=BUILD_IMAGE_PHP_CONFIGURE_FLAGS,
            ),
        )
        LOGGER.info("Building the docker image %s", self.image_name)
        await run_cmd(
            f"docker build --platform {self.target.docker_platform} "
            f"-t {self.image_name} -f Dockerfile.build .",
            cwd=str(work_dir),
        )

    async def _save_spc_logs(self, container: str) -> None:
        for log in SPC_LOGS:
            dest = self.platform_dir / log.replace(".", "-", 1)
            res = await run_cmd(
                f"docker cp {container}:/tmp/log/{log} {dest}", raise_on_error=False
            )
            if res.exit_code == 0:
                LOGGER.error("Saved the static-php-cli log %s", dest)

    async def build(self) -> BuildManifest:
        await self._check_docker()
        names = self.names

        async with self.work_dir(f"openemr-linux-{self.arch}-build-") as work_dir:
            await self._build_image(work_dir)

            await write_to_file(
                work_dir / "docker-build-internal.sh", self.render_build_script()
            )
            output_dir = work_dir / "output"
            await aiofiles.os.makedirs(output_dir, exist_ok=True)

            container = f"openemr-builder-{self.arch}-{int(time.time())}"
            env = {
                name: str(value)
                for name, value in (
                    ("PARALLEL_JOBS", self.settings.parallel_jobs),
                    ("COMPOSER_MEMORY_LIMIT", self.settings.composer_memory_limit),
                )
                if value
            }
            env_args = "".join(f" -e {name}={value}" for name, value in env.items())
            args = " ".join(
                f"'{arg}'"
                for arg in (
                    self.settings.openemr_version,
                    self.settings.php_version,
                    self.settings.spc_git_repo,
                    self.settings.spc_git_branch,
                    self.settings.spc_git_commit,
                    self.settings.extensions_csv,
                )
            )

            LOGGER.info("Running the build in the container %s", container)
            try:
                await run_cmd(
                    f"docker run --name {container} "
                    f"--platform {self.target.docker_platform} "
                    f"--memory={CONTAINER_MEMORY} --memory-swap={CONTAINER_MEMORY}"
                    f"{env_args} -v {work_dir}:/build -v {output_dir}:/output "
                    f"-w /build {self.image_name} "
                    f"bash /build/docker-build-internal.sh {args}"
                )
            except CommandError:
                LOGGER.error("The build in the container %s failed", container)
                await aiofiles.os.makedirs(self.platform_dir, exist_ok=True)
                await self._save_spc_logs(container)
                raise
            finally:
                await run_cmd(f"docker rm {container}", raise_on_error=False)

            files = {}
            for kind, name in (
                (ArtifactKind.BINARY, names.binary),
                (ArtifactKind.PHP_CLI, names.php_cli),
                (ArtifactKind.PHP_CGI, names.php_cgi),
                (ArtifactKind.PHP_FPM, names.php_fpm),
                (ArtifactKind.PHAR, names.phar),
            ):
                if await aiofiles.os.path.isfile(path := output_dir / name):
                    files[kind] = path
                elif kind == ArtifactKind.BINARY:
                    raise RuntimeError(f"The container build did not produce {name}")
                else:
                    LOGGER.warning("The container build did not produce %s", name)

            if (php_ini := self.platform_dir / "php.ini").is_file():
                files[ArtifactKind.PHP_INI] = php_ini

            return await self.publish(files)
