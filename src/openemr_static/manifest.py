"""The build manifest records which files a build produced, so that the run,
setup and test commands do not have to guess them from file names.

Trees that were built before the manifest existed are still supported: if no
manifest is found, the artifacts are discovered via their naming convention
and a warning is logged.

"""

import datetime
import enum
import json
import pathlib
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field

import aiofiles
import aiofiles.os

from openemr_static.logger import LOGGER
from openemr_static.target import BuildTarget
from openemr_static.util import is_executable
from openemr_static.util import write_to_file

MANIFEST_FILE_NAME = "build-manifest.json"


@enum.unique
class ArtifactKind(enum.StrEnum):
    #: self contained executable (MicroSFX + PHAR)
    BINARY = "binary"
    PHP_CLI = "php_cli"
    PHP_CGI = "php_cgi"
    PHP_FPM = "php_fpm"
    PHAR = "phar"
    #: FreeBSD distribution archive with binaries and bundled libraries
    DIST_TARBALL = "dist_tarball"
    #: shared libraries needed by the FreeBSD binaries
    LIB_DIR = "lib_dir"
    PHP_INI = "php_ini"


EXECUTABLE_KINDS = (
    ArtifactKind.BINARY,
    ArtifactKind.PHP_CLI,
    ArtifactKind.PHP_CGI,
    ArtifactKind.PHP_FPM,
)


@dataclass
class BuildManifest:
    openemr_version: str
    php_version: str
    target: BuildTarget
    arch: str

    #: artifact paths relative to the directory containing the manifest
    artifacts: dict[ArtifactKind, str] = field(default_factory=dict)

    created: str = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
    )

    #: directory of the manifest file, set when writing or loading
    directory: pathlib.Path | None = field(default=None, compare=False, repr=False)

    def add(self, kind: ArtifactKind, path: pathlib.Path, base: pathlib.Path) -> None:
        self.artifacts[kind] = str(path.relative_to(base))

    def paths(self) -> dict[ArtifactKind, pathlib.Path]:
        """The absolute paths of all recorded artifacts.

        Raises:
            :py:class:`ValueError`: if the manifest has neither been loaded
                nor written

        """
        if self.directory is None:
            raise ValueError("The manifest has neither been loaded nor written")
        return {
            kind: (self.directory / path).absolute()
            for kind, path in self.artifacts.items()
        }

    def path_of(self, kind: ArtifactKind) -> pathlib.Path | None:
        return self.paths().get(kind)

    def to_json(self) -> str:
        return json.dumps(
            {
                "openemr_version": self.openemr_version,
                "php_version": self.php_version,
                "target": str(self.target),
                "arch": self.arch,
                "created": self.created,
                "artifacts": {str(k): v for k, v in self.artifacts.items()},
            },
            indent=2,
            sort_keys=True,
        )

    @staticmethod
    def from_json(text: str) -> "BuildManifest":
        data = json.loads(text)
        artifacts: dict[ArtifactKind, str] = {}
        for kind, path in data.get("artifacts", {}).items():
            try:
                artifacts[ArtifactKind(kind)] = path
            except ValueError as exc:
                raise ValueError(f"Unknown artifact kind in manifest: {kind}") from exc

        return BuildManifest(
            openemr_version=data["openemr_version"],
            php_version=data["php_version"],
            target=BuildTarget.parse(data["target"]),
            arch=data["arch"],
            created=data["created"],
            artifacts=artifacts,
        )

    async def write(self, directory: pathlib.Path) -> pathlib.Path:
        await aiofiles.os.makedirs(directory, exist_ok=True)
        dest = directory / MANIFEST_FILE_NAME
        await write_to_file(dest, self.to_json() + "\n")
        self.directory = directory
        LOGGER.info("Wrote build manifest %s", dest)
        return dest

    @staticmethod
    async def load(path: pathlib.Path) -> "BuildManifest":
        """Reads the manifest from ``path``, which is either the manifest file
        or its directory.

        Raises:
            :py:class:`FileNotFoundError`: if no manifest exists

        """
        if path.is_dir():
            path = path / MANIFEST_FILE_NAME
        async with aiofiles.open(path, "r") as manifest_file:
            manifest = BuildManifest.from_json(await manifest_file.read())
        manifest.directory = path.parent
        return manifest


@dataclass
class LocatedArtifacts:
    """The artifacts of one target as found on disk."""

    target: BuildTarget
    paths: dict[ArtifactKind, pathlib.Path] = field(default_factory=dict)

    #: whether the paths come from a manifest or from file name discovery
    from_manifest: bool = False

    def get(self, kind: ArtifactKind) -> pathlib.Path | None:
        return self.paths.get(kind)

    def require(self, kind: ArtifactKind, hint: str | None = None) -> pathlib.Path:
        """Returns the path of ``kind``.

        Raises:
            :py:class:`RuntimeError`: if the artifact was not found

        """
        if (path := self.paths.get(kind)) is None:
            raise RuntimeError(
                f"Could not find the {kind.replace('_', '-')} artifact for {self.target}. "
                + (hint or f"Please build it first: openemr-static build {self.target}")
            )
        return path

    def describe(self) -> str:
        source = "build manifest" if self.from_manifest else "file name discovery"
        lines = [f"Artifacts for {self.target} (from {source}):"]
        for kind in ArtifactKind:
            path = self.paths.get(kind)
            lines.append(f"  {kind}: {path if path else '-'}")
        return "\n".join(lines)


def _glob_patterns(target: BuildTarget) -> dict[ArtifactKind, list[str]]:
    os_name = target.os_name
    arch = "*"
    if target.is_linux:
        arch = target.artifact_arch("")

    patterns = {
        ArtifactKind.BINARY: [f"openemr-*-{os_name}-{arch}"],
        ArtifactKind.PHP_CLI: [f"php-cli-*-{os_name}-{arch}"],
        ArtifactKind.PHP_CGI: [f"php-cgi-*-{os_name}-{arch}"],
        ArtifactKind.PHP_FPM: [f"php-fpm-*-{os_name}-{arch}"],
        ArtifactKind.PHAR: ["openemr-*.phar", "*.phar"],
        ArtifactKind.PHP_INI: ["php.ini"],
    }
    if target == BuildTarget.FREEBSD:
        patterns[ArtifactKind.PHP_CLI].append("php")
        patterns[ArtifactKind.DIST_TARBALL] = [f"openemr-*-{os_name}-*.tar.gz"]
    return patterns


def _discover(
    kind: ArtifactKind, patterns: list[str], search_dirs: Iterable[pathlib.Path]
) -> pathlib.Path | None:
    for directory in search_dirs:
        if not directory.is_dir():
            continue
        for pattern in patterns:
            matches = [p for p in sorted(directory.glob(pattern)) if p.is_file()]
            if kind in EXECUTABLE_KINDS:
                # archives match the binary patterns too
                matches = [
                    p
                    for p in matches
                    if not p.name.endswith((".tar.gz", ".phar")) and is_executable(p)
                ]
            if matches:
                return matches[-1]
    return None


def _discover_lib_dir(search_dirs: Iterable[pathlib.Path]) -> pathlib.Path | None:
    for directory in search_dirs:
        if (lib := directory / "lib").is_dir():
            return lib
        for candidate in sorted(directory.glob("openemr-*/lib")):
            if candidate.is_dir():
                return candidate
    return None


async def locate_artifacts(
    platform_dir: pathlib.Path,
    target: BuildTarget,
    search_dirs: Iterable[pathlib.Path] | None = None,
) -> LocatedArtifacts:
    """Finds the artifacts of ``target``.

    The build manifest in ``platform_dir`` is authoritative for the build
    outputs. Without a manifest the files are discovered by their names in
    ``search_dirs`` (defaults to ``platform_dir`` only), taking the first
    directory with a match and the lexicographically last file name in it.

    ``php.ini`` is user editable and is always looked up in ``search_dirs``,
    a file found there replaces the one recorded in the manifest.

    """
    dirs = list(search_dirs) if search_dirs is not None else [platform_dir]
    manifest_path = platform_dir / MANIFEST_FILE_NAME
    if await aiofiles.os.path.isfile(manifest_path):
        manifest = await BuildManifest.load(manifest_path)
        located = LocatedArtifacts(target=target, from_manifest=True)
        for kind, path in manifest.paths().items():
            if await aiofiles.os.path.exists(path):
                located.paths[kind] = path
            else:
                LOGGER.warning(
                    "%s listed in %s does not exist anymore", path, manifest_path
                )
        if php_ini := _discover(ArtifactKind.PHP_INI, ["php.ini"], dirs):
            located.paths[ArtifactKind.PHP_INI] = php_ini
        return located

    LOGGER.warning(
        "No build manifest found in %s, discovering artifacts by file name",
        platform_dir,
    )
    located = LocatedArtifacts(target=target)
    for kind, patterns in _glob_patterns(target).items():
        if path := _discover(kind, patterns, dirs):
            located.paths[kind] = path
    if target == BuildTarget.FREEBSD and (lib_dir := _discover_lib_dir(dirs)):
        located.paths[ArtifactKind.LIB_DIR] = lib_dir
    return located


def artifact_dir(project_root: pathlib.Path, target: BuildTarget) -> pathlib.Path:
    """Directory holding the manifest of ``target``: the platform directory,
    or its ``dist/`` subdirectory for FreeBSD.

    """
    platform_dir = project_root / target.platform_dir
    if target == BuildTarget.FREEBSD:
        return platform_dir / "dist"
    return platform_dir


async def locate_target_artifacts(
    project_root: pathlib.Path, target: BuildTarget
) -> LocatedArtifacts:
    """:py:func:`locate_artifacts` for ``target`` below ``project_root``,
    falling back to the platform directory and the project root.

    """
    directory = artifact_dir(project_root, target)
    search_dirs = [directory]
    for fallback in (project_root / target.platform_dir, project_root):
        if fallback not in search_dirs:
            search_dirs.append(fallback)
    return await locate_artifacts(directory, target, search_dirs)
