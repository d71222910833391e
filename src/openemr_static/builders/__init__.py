"""Builders producing the OpenEMR binaries for one :py:class:`BuildTarget`
each.

"""

import abc
import asyncio
import contextlib
import pathlib
import platform
import shutil
import tempfile
from collections.abc import AsyncIterator
from dataclasses import dataclass
from dataclasses import field
from typing import ClassVar

import aiofiles.os

from openemr_static.data import BuildSettings
from openemr_static.logger import LOGGER
from openemr_static.manifest import EXECUTABLE_KINDS
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import BuildManifest
from openemr_static.target import ArtifactNames
from openemr_static.target import BuildTarget
from openemr_static.util import copy_artifact
from openemr_static.util import ensure_absent
from openemr_static.util import human_size
from openemr_static.util import make_executable

#: artifacts that are only kept in the platform directory
_PLATFORM_ONLY_KINDS = (ArtifactKind.LIB_DIR, ArtifactKind.PHP_INI)


@dataclass
class Builder(abc.ABC):
    """Base class of the builders.

    A build happens in a temporary work directory. The results are published
    into the platform directory (e.g. ``mac_os/``) and the project root, and
    recorded in the build manifest of the platform directory.

    """

    settings: BuildSettings

    #: directory containing the platform directories
    project_root: pathlib.Path

    target: BuildTarget

    #: ``uname -m`` of the build host
    machine: str = field(default_factory=platform.machine)

    #: keep the work directory when the build fails
    KEEP_WORK_DIR_ON_FAILURE: ClassVar[bool] = False

    @property
    def platform_dir(self) -> pathlib.Path:
        return self.project_root / self.target.platform_dir

    @property
    def artifact_dir(self) -> pathlib.Path:
        """Directory that receives the artifacts and the manifest."""
        return self.platform_dir

    @property
    def arch(self) -> str:
        return self.target.artifact_arch(self.machine)

    @property
    def names(self) -> ArtifactNames:
        return ArtifactNames(self.settings.openemr_version, self.target, self.arch)

    @contextlib.asynccontextmanager
    async def work_dir(self, prefix: str) -> AsyncIterator[pathlib.Path]:
        """Temporary directory that is removed afterwards, unless the
        ``debug`` setting is on or the build failed and the builder keeps
        failed work directories.

        """
        path = pathlib.Path(await asyncio.to_thread(tempfile.mkdtemp, prefix=prefix))
        LOGGER.debug("Build directory: %s", path)
        failed = False
        try:
            yield path
        except BaseException:
            failed = True
            raise
        finally:
            if self.settings.debug or (failed and self.KEEP_WORK_DIR_ON_FAILURE):
                LOGGER.info("Build directory preserved at %s", path)
            else:
                await ensure_absent(path)

    async def stage(
        self, src: pathlib.Path, staging_dir: pathlib.Path, name: str
    ) -> pathlib.Path:
        """Copies ``src`` as ``name`` into ``staging_dir``."""
        await aiofiles.os.makedirs(staging_dir, exist_ok=True)
        dest = staging_dir / name
        await asyncio.to_thread(shutil.copy2, src, dest)
        return dest

    async def publish(self, files: dict[ArtifactKind, pathlib.Path]) -> BuildManifest:
        """Copies the ``files`` into the artifact directory and the project
        root and writes the manifest.

        """
        manifest = BuildManifest(
            openemr_version=self.settings.openemr_version,
            php_version=self.settings.php_version,
            target=self.target,
            arch=self.arch,
        )

        LOGGER.info("Artifacts of the %s build:", self.target)
        for kind, src in files.items():
            if kind in EXECUTABLE_KINDS:
                await make_executable(src)

            dest_dirs = [self.artifact_dir]
            if kind not in _PLATFORM_ONLY_KINDS:
                dest_dirs.append(self.project_root)
            copies = await copy_artifact(src, dest_dirs)

            manifest.add(kind, copies[0], self.artifact_dir)
            LOGGER.info("  %s: %s (%s)", kind, copies[0], human_size(copies[0]))

        await manifest.write(self.artifact_dir)
        return manifest

    @abc.abstractmethod
    async def build(self) -> BuildManifest:
        """Builds all artifacts of the target and publishes them."""


def get_builder(
    target: BuildTarget, settings: BuildSettings, project_root: pathlib.Path
) -> Builder:
    from openemr_static.builders.freebsd import FreeBsdBuilder
    from openemr_static.builders.linux import LinuxBuilder
    from openemr_static.builders.macos import MacOsBuilder

    if target == BuildTarget.MACOS:
        return MacOsBuilder(settings=settings, project_root=project_root, target=target)
    if target.is_linux:
        return LinuxBuilder(settings=settings, project_root=project_root, target=target)
    return FreeBsdBuilder(settings=settings, project_root=project_root, target=target)
