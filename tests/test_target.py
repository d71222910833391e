import pytest

from openemr_static.target import ArtifactNames
from openemr_static.target import BuildTarget
from openemr_static.target import spc_arch


@pytest.mark.parametrize(
    "value,target",
    [
        ("macos", BuildTarget.MACOS),
        ("mac_os", BuildTarget.MACOS),
        ("Linux-AMD64", BuildTarget.LINUX_AMD64),
        ("linux_arm64", BuildTarget.LINUX_ARM64),
        (" freebsd ", BuildTarget.FREEBSD),
    ],
)
def test_parse(value: str, target: BuildTarget):
    assert BuildTarget.parse(value) == target


def test_parse_invalid():
    with pytest.raises(ValueError, match="Invalid build target: 'windows'"):
        BuildTarget.parse("windows")


@pytest.mark.parametrize(
    "target,platform_dir,os_name,docker_platform",
    [
        (BuildTarget.MACOS, "mac_os", "macos", None),
        (BuildTarget.LINUX_AMD64, "linux_amd64", "linux", "linux/amd64"),
        (BuildTarget.LINUX_ARM64, "linux_arm64", "linux", "linux/arm64"),
        (BuildTarget.FREEBSD, "freebsd", "freebsd", None),
    ],
)
def test_target_properties(
    target: BuildTarget, platform_dir: str, os_name: str, docker_platform: str | None
):
    assert target.platform_dir == platform_dir
    assert target.os_name == os_name
    assert target.docker_platform == docker_platform
    assert target.is_linux == (os_name == "linux")


@pytest.mark.parametrize(
    "target,machine,arch",
    [
        (BuildTarget.MACOS, "arm64", "arm64"),
        (BuildTarget.MACOS, "x86_64", "x86_64"),
        (BuildTarget.LINUX_AMD64, "arm64", "amd64"),
        (BuildTarget.LINUX_ARM64, "x86_64", "arm64"),
        (BuildTarget.FREEBSD, "arm64", "arm64"),
        (BuildTarget.FREEBSD, "x86_64", "amd64"),
    ],
)
def test_artifact_arch(target: BuildTarget, machine: str, arch: str):
    assert target.artifact_arch(machine) == arch


@pytest.mark.parametrize(
    "machine,arch", [("arm64", "aarch64"), ("aarch64", "aarch64"), ("x86_64", "x86_64")]
)
def test_spc_arch(machine: str, arch: str):
    assert spc_arch(machine) == arch


def test_artifact_names():
    names = ArtifactNames("v7_0_4", BuildTarget.LINUX_ARM64, "arm64")

    assert names.binary == "openemr-v7_0_4-linux-arm64"
    assert names.php_cli == "php-cli-v7_0_4-linux-arm64"
    assert names.php_cgi == "php-cgi-v7_0_4-linux-arm64"
    assert names.php_fpm == "php-fpm-v7_0_4-linux-arm64"
    assert names.phar == "openemr-v7_0_4.phar"


def test_freebsd_dist_tarball_name():
    names = ArtifactNames("v7_0_4", BuildTarget.FREEBSD, "amd64")
    assert names.dist_tarball == "openemr-v7_0_4-freebsd-amd64.tar.gz"
