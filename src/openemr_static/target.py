"""The operating system and architecture combinations that can be built."""

import enum
from dataclasses import dataclass


@enum.unique
class BuildTarget(enum.Enum):
    """Enumeration of the supported build targets."""

    #: macOS on the host's architecture
    MACOS = "macos"
    #: Linux x86_64, built in a docker container
    LINUX_AMD64 = "linux-amd64"
    #: Linux aarch64, built in a docker container
    LINUX_ARM64 = "linux-arm64"
    #: FreeBSD, built inside a QEMU virtual machine
    FREEBSD = "freebsd"

    @staticmethod
    def parse(val: str) -> "BuildTarget":
        normalized = val.strip().lower().replace("_", "-")
        if normalized == "mac-os":
            normalized = "macos"
        try:
            return BuildTarget(normalized)
        except ValueError as exc:
            raise ValueError(
                f"Invalid build target: '{val}', expected one of "
                + ", ".join(str(t) for t in BuildTarget)
            ) from exc

    def __str__(self) -> str:
        return self.value

    @property
    def os_name(self) -> str:
        """The operating system name used in the artifact names."""
        if self.is_linux:
            return "linux"
        return self.value

    @property
    def is_linux(self) -> bool:
        return self in (BuildTarget.LINUX_AMD64, BuildTarget.LINUX_ARM64)

    @property
    def platform_dir(self) -> str:
        """Name of the directory below the project root that receives the
        artifacts of this target.

        """
        return {
            BuildTarget.MACOS: "mac_os",
            BuildTarget.LINUX_AMD64: "linux_amd64",
            BuildTarget.LINUX_ARM64: "linux_arm64",
            BuildTarget.FREEBSD: "freebsd",
        }[self]

    @property
    def docker_platform(self) -> str | None:
        if self == BuildTarget.LINUX_AMD64:
            return "linux/amd64"
        if self == BuildTarget.LINUX_ARM64:
            return "linux/arm64"
        return None

    def artifact_arch(self, machine: str) -> str:
        """Returns the architecture suffix of the artifact names for a host
        whose ``uname -m`` is ``machine``.

        """
        if self == BuildTarget.LINUX_AMD64:
            return "amd64"
        if self == BuildTarget.LINUX_ARM64:
            return "arm64"
        if self == BuildTarget.FREEBSD:
            return "arm64" if machine in ("arm64", "aarch64") else "amd64"
        # macOS reports arm64 on Apple Silicon and x86_64 on Intel
        return "arm64" if machine in ("arm64", "aarch64") else "x86_64"


def spc_arch(machine: str) -> str:
    """Architecture name used by static-php-cli release archives."""
    return "aarch64" if machine in ("arm64", "aarch64") else "x86_64"


@dataclass(frozen=True)
class ArtifactNames:
    """File names of everything a build produces."""

    tag: str
    target: BuildTarget
    arch: str

    @property
    def _suffix(self) -> str:
        return f"{self.tag}-{self.target.os_name}-{self.arch}"

    @property
    def binary(self) -> str:
        """The self contained executable (MicroSFX with the PHAR appended)."""
        return f"openemr-{self._suffix}"

    @property
    def php_cli(self) -> str:
        return f"php-cli-{self._suffix}"

    @property
    def php_cgi(self) -> str:
        return f"php-cgi-{self._suffix}"

    @property
    def php_fpm(self) -> str:
        return f"php-fpm-{self._suffix}"

    @property
    def phar(self) -> str:
        return f"openemr-{self.tag}.phar"

    @property
    def dist_tarball(self) -> str:
        return f"openemr-{self._suffix}.tar.gz"
