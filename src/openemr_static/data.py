"""Default versions, environment variable names and the build settings."""

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field

#: environment variable holding the OpenEMR git tag that is built
OPENEMR_VERSION_ENVVAR_NAME = "OPENEMR_VERSION"

#: environment variable holding the PHP ``major.minor`` version
PHP_VERSION_ENVVAR_NAME = "PHP_VERSION"

#: environment variable holding the release tag of the prebuilt static-php-cli
STATIC_PHP_CLI_RELEASE_TAG_ENVVAR_NAME = "STATIC_PHP_CLI_RELEASE_TAG"

#: environment variable with the GitHub ``owner/name`` of static-php-cli
STATIC_PHP_CLI_REPO_ENVVAR_NAME = "STATIC_PHP_CLI_REPO"

#: git url of static-php-cli, used by the container builds which build spc
#: from source
STATIC_PHP_CLI_GIT_REPO_ENVVAR_NAME = "STATIC_PHP_CLI_GIT_REPO"

STATIC_PHP_CLI_BRANCH_ENVVAR_NAME = "STATIC_PHP_CLI_BRANCH"

STATIC_PHP_CLI_COMMIT_ENVVAR_NAME = "STATIC_PHP_CLI_COMMIT"

#: comma separated list of the PHP extensions compiled into the binaries
PHP_EXTENSIONS_ENVVAR_NAME = "PHP_EXTENSIONS"

#: overrides the detected composer memory limit (e.g. ``2G``)
COMPOSER_MEMORY_LIMIT_ENVVAR_NAME = "COMPOSER_MEMORY_LIMIT"

#: overrides the detected number of parallel make jobs
PARALLEL_JOBS_ENVVAR_NAME = "PARALLEL_JOBS"

#: token that is sent to GitHub to avoid the anonymous rate limit
GITHUB_TOKEN_ENVVAR_NAME = "GITHUB_TOKEN"

FREEBSD_VERSION_ENVVAR_NAME = "FREEBSD_VERSION"

DOCKER_BASE_IMAGE_ENVVAR_NAME = "DOCKER_BASE_IMAGE"

#: directory containing the per platform directories (``mac_os/``, ...)
PROJECT_ROOT_ENVVAR_NAME = "OPENEMR_PROJECT_ROOT"


DEFAULT_OPENEMR_VERSION = "v7_0_4"
DEFAULT_PHP_VERSION = "8.5"
DEFAULT_STATIC_PHP_CLI_RELEASE_TAG = "2.7.9"
DEFAULT_STATIC_PHP_CLI_REPO = "crazywhalecc/static-php-cli"
DEFAULT_STATIC_PHP_CLI_GIT_REPO = "https://github.com/crazywhalecc/static-php-cli.git"
DEFAULT_STATIC_PHP_CLI_BRANCH = "main"
#: pinned commit of static-php-cli for the container builds
DEFAULT_STATIC_PHP_CLI_COMMIT = "59a6e2753265622b7e8d599f791f1ad3c2e60388"
DEFAULT_FREEBSD_VERSION = "15.0"
DEFAULT_DOCKER_BASE_IMAGE = "ubuntu:24.04"

OPENEMR_GIT_URL = "https://github.com/openemr/openemr.git"

DEFAULT_PHP_EXTENSIONS: list[str] = [
    "bcmath",
    "exif",
    "gd",
    "intl",
    "ldap",
    "mbstring",
    "mysqli",
    "opcache",
    "openssl",
    "pcntl",
    "pdo_mysql",
    "phar",
    "redis",
    "soap",
    "sockets",
    "zip",
    "imagick",
]

#: the FreeBSD build compiles php from source and enables a few more
#: extensions that are otherwise pulled in implicitly by spc
FREEBSD_PHP_EXTENSIONS: list[str] = DEFAULT_PHP_EXTENSIONS + [
    "filter",
    "curl",
    "dom",
    "fileinfo",
    "simplexml",
    "xmlreader",
    "xmlwriter",
    "xsl",
    "ctype",
    "calendar",
    "tokenizer",
]

#: packages that are installed into the FreeBSD build VM, exported to the
#: build script via ``env.sh``
FREEBSD_BUILD_PACKAGES: dict[str, str] = {
    "FREEBSD_PHP_PKG": "php83",
    "FREEBSD_PHP_EXTENSIONS_PKG": "php83-extensions php83-zlib php83-zip",
    "FREEBSD_PHP_COMPOSER_PKG": "php83-composer",
    "FREEBSD_NODE_PKG": "node22",
    "FREEBSD_NPM_PKG": "npm-node22",
    "FREEBSD_IMAGEMAGICK_PKG": "ImageMagick7",
    "FREEBSD_GCC_PKG": "gcc13",
    "FREEBSD_PYTHON_PKG": "python311",
}

#: Homebrew formulae that static-php-cli needs on macOS
HOMEBREW_LIBRARIES = [
    "libpng",
    "libjpeg",
    "freetype",
    "libxml2",
    "libzip",
    "imagemagick",
    "pkg-config",
]

_MEMORY_LIMIT_RE = re.compile(r"^(-1|\d+[GM])$")


def parse_extensions(value: str) -> list[str]:
    """Splits a comma separated extension list, dropping blanks and duplicates
    while preserving the order.

    Raises:
        :py:class:`ValueError`: if no extension remains

    """
    extensions: list[str] = []
    for ext in value.split(","):
        if (ext := ext.strip().lower()) and ext not in extensions:
            extensions.append(ext)
    if not extensions:
        raise ValueError(f"Invalid PHP extension list: '{value}'")
    return extensions


def parse_parallel_jobs(value: str) -> int:
    try:
        jobs = int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid number of parallel jobs: '{value}'") from exc
    if jobs < 1:
        raise ValueError(f"Invalid number of parallel jobs: '{value}'")
    return jobs


def parse_memory_limit(value: str) -> str:
    if not _MEMORY_LIMIT_RE.match(value := value.strip().upper()):
        raise ValueError(f"Invalid composer memory limit: '{value}'")
    return value


@dataclass
class BuildSettings:
    """User controllable settings of a build, read from the environment and
    overridden from the command line.

    """

    openemr_version: str = DEFAULT_OPENEMR_VERSION
    php_version: str = DEFAULT_PHP_VERSION

    #: extensions for spc, or for the configure call on FreeBSD
    php_extensions: list[str] = field(
        default_factory=lambda: list(DEFAULT_PHP_EXTENSIONS)
    )

    #: release of the prebuilt ``spc`` binary (macOS)
    spc_release_tag: str = DEFAULT_STATIC_PHP_CLI_RELEASE_TAG
    spc_repo: str = DEFAULT_STATIC_PHP_CLI_REPO

    #: git checkout of static-php-cli that is built inside the Linux container
    spc_git_repo: str = DEFAULT_STATIC_PHP_CLI_GIT_REPO
    spc_git_branch: str = DEFAULT_STATIC_PHP_CLI_BRANCH
    spc_git_commit: str = DEFAULT_STATIC_PHP_CLI_COMMIT

    freebsd_version: str = DEFAULT_FREEBSD_VERSION
    docker_base_image: str = DEFAULT_DOCKER_BASE_IMAGE
    github_token: str | None = None

    #: explicit overrides of the values derived from the host resources
    composer_memory_limit: str | None = None
    parallel_jobs: int | None = None

    #: keep temporary directories for inspection
    debug: bool = False

    @property
    def extensions_csv(self) -> str:
        return ",".join(self.php_extensions)

    @staticmethod
    def from_env(env: Mapping[str, str] | None = None) -> "BuildSettings":
        env = os.environ if env is None else env

        def _get(name: str, default: str) -> str:
            return env.get(name) or default

        settings = BuildSettings(
            openemr_version=_get(OPENEMR_VERSION_ENVVAR_NAME, DEFAULT_OPENEMR_VERSION),
            php_version=_get(PHP_VERSION_ENVVAR_NAME, DEFAULT_PHP_VERSION),
            spc_release_tag=_get(
                STATIC_PHP_CLI_RELEASE_TAG_ENVVAR_NAME,
                DEFAULT_STATIC_PHP_CLI_RELEASE_TAG,
            ),
            spc_repo=_get(STATIC_PHP_CLI_REPO_ENVVAR_NAME, DEFAULT_STATIC_PHP_CLI_REPO),
            spc_git_repo=_get(
                STATIC_PHP_CLI_GIT_REPO_ENVVAR_NAME, DEFAULT_STATIC_PHP_CLI_GIT_REPO
            ),
            spc_git_branch=_get(
                STATIC_PHP_CLI_BRANCH_ENVVAR_NAME, DEFAULT_STATIC_PHP_CLI_BRANCH
            ),
            spc_git_commit=env.get(
                STATIC_PHP_CLI_COMMIT_ENVVAR_NAME, DEFAULT_STATIC_PHP_CLI_COMMIT
            ),
            freebsd_version=_get(FREEBSD_VERSION_ENVVAR_NAME, DEFAULT_FREEBSD_VERSION),
            docker_base_image=_get(
                DOCKER_BASE_IMAGE_ENVVAR_NAME, DEFAULT_DOCKER_BASE_IMAGE
            ),
            github_token=env.get(GITHUB_TOKEN_ENVVAR_NAME) or None,
        )

        if extensions := env.get(PHP_EXTENSIONS_ENVVAR_NAME):
            settings.php_extensions = parse_extensions(extensions)
        if memory_limit := env.get(COMPOSER_MEMORY_LIMIT_ENVVAR_NAME):
            settings.composer_memory_limit = parse_memory_limit(memory_limit)
        if jobs := env.get(PARALLEL_JOBS_ENVVAR_NAME):
            settings.parallel_jobs = parse_parallel_jobs(jobs)

        return settings
