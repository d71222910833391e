import platform
import shutil
from dataclasses import dataclass

import aiofiles.os
from obs_package_update.util import RunCommand

from openemr_static.builders import Builder
from openemr_static.data import HOMEBREW_LIBRARIES
from openemr_static.logger import LOGGER
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import BuildManifest
from openemr_static.resources import HostResources
from openemr_static.resources import build_env
from openemr_static.source import prepare_openemr
from openemr_static.spc import SpcRunner
from openemr_static.spc import find_build_output
from openemr_static.spc import install_spc_release
from openemr_static.util import require_tools

run_cmd = RunCommand(logger=LOGGER)

_TOOL_HINTS = {
    "git": "xcode-select --install",
    "php": "brew install php",
    "composer": "brew install composer",
}


async def missing_homebrew_libraries() -> list[str]:
    """Returns the :py:const:`~openemr_static.data.HOMEBREW_LIBRARIES` that
    are not installed, or an empty list if Homebrew itself is missing.

    """
    if not shutil.which("brew"):
        return []
    missing = []
    for lib in HOMEBREW_LIBRARIES:
        res = await run_cmd(f"brew list {lib}", raise_on_error=False)
        if res.exit_code != 0:
            missing.append(lib)
    return missing


@dataclass
class MacOsBuilder(Builder):
    """Builds natively on macOS with a prebuilt static-php-cli release."""

    async def build(self) -> BuildManifest:
        if platform.system() != "Darwin":
            raise RuntimeError("The macOS build has to run on macOS")
        require_tools(["git", "php", "composer"], _TOOL_HINTS)

        if missing := await missing_homebrew_libraries():
            LOGGER.warning(
                "Missing Homebrew libraries: %s, the build may fail. "
                "Install them with: brew install %s",
                ", ".join(missing),
                " ".join(missing),
            )

        resources = await HostResources.detect()
        env = build_env(resources, self.settings)
        names = self.names
        extensions = self.settings.extensions_csv

        async with self.work_dir("openemr-macos-build-") as work_dir:
            phar = await prepare_openemr(
                self.settings.openemr_version, work_dir, env
            )

            spc = SpcRunner(
                spc_bin=await install_spc_release(
                    self.settings.spc_repo,
                    self.settings.spc_release_tag,
                    "macos",
                    self.machine,
                    work_dir,
                    self.settings.github_token,
                ),
                cwd=work_dir,
                env=env,
            )
            await spc.doctor()
            await spc.download(self.settings.php_version, extensions)
            await spc.build(extensions)

            if not (micro_sfx := find_build_output(work_dir, "micro.sfx")):
                raise RuntimeError(f"Could not find micro.sfx below {work_dir}")
            LOGGER.debug("Found micro.sfx at %s", micro_sfx)

            staging = work_dir / "artifacts"
            await aiofiles.os.makedirs(staging, exist_ok=True)
            files = {
                ArtifactKind.BINARY: await spc.combine(
                    phar, staging / names.binary, micro_sfx=micro_sfx
                )
            }
            for kind, binary_name, artifact_name in (
                (ArtifactKind.PHP_CLI, "php", names.php_cli),
                (ArtifactKind.PHP_CGI, "php-cgi", names.php_cgi),
                (ArtifactKind.PHP_FPM, "php-fpm", names.php_fpm),
            ):
                if binary := find_build_output(work_dir, binary_name):
                    files[kind] = await self.stage(binary, staging, artifact_name)
                else:
                    LOGGER.warning("spc did not build %s", binary_name)
            files[ArtifactKind.PHAR] = await self.stage(phar, staging, names.phar)

            if (php_ini := self.platform_dir / "php.ini").is_file():
                files[ArtifactKind.PHP_INI] = php_ini
            else:
                LOGGER.info(
                    "No php.ini in %s, the web server runs with PHP's defaults",
                    self.platform_dir,
                )

            return await self.publish(files)
