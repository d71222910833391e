import pytest
from conftest import FakeCommandResult
from conftest import FakeRunCommand

from openemr_static import resources
from openemr_static.data import BuildSettings
from openemr_static.resources import HostResources
from openemr_static.resources import build_env
from openemr_static.resources import count_physical_cores
from openemr_static.resources import parse_meminfo

_CPUINFO = """processor	: 0
physical id	: 0
core id		: 0

processor	: 1
physical id	: 0
core id		: 0

processor	: 2
physical id	: 0
core id		: 1

processor	: 3
physical id	: 1
core id		: 0
"""


@pytest.mark.parametrize(
    "logical,physical,ram,jobs,composer,vm_ram",
    [
        (8, 4, 16, 5, "4G", 8),
        (2, 1, 1, 2, "1G", 4),
        (4, 4, 6, 4, "3G", 4),
        (32, 16, 64, 17, "4G", 16),
    ],
)
def test_derived_values(
    logical: int, physical: int, ram: int, jobs: int, composer: str, vm_ram: int
):
    res = HostResources(logical_cpus=logical, physical_cpus=physical, total_ram_gb=ram)

    assert res.parallel_jobs == jobs
    assert res.composer_memory_limit == composer
    assert res.vm_ram_gb == vm_ram
    assert res.node_max_old_space_size == ram * 512


def test_parse_meminfo():
    assert parse_meminfo("MemTotal:       16318480 kB\nMemFree: 1 kB\n") == 16318480
    assert parse_meminfo("MemFree: 1 kB\n") is None


def test_count_physical_cores():
    assert count_physical_cores(_CPUINFO) == 3
    assert count_physical_cores("processor : 0\nBogoMIPS : 50.00\n") is None


@pytest.mark.asyncio
async def test_detect_on_macos(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(resources.platform, "system", lambda: "Darwin")
    run_cmd = FakeRunCommand(
        {
            "sysctl -n hw.ncpu": FakeCommandResult(stdout="10\n"),
            "sysctl -n hw.physicalcpu": FakeCommandResult(stdout="8\n"),
            "sysctl -n hw.memsize": FakeCommandResult(stdout=f"{32 * 1024**3}\n"),
        }
    )

    res = await HostResources.detect(run_cmd)

    assert res == HostResources(logical_cpus=10, physical_cpus=8, total_ram_gb=32)
    assert run_cmd.commands == [
        "sysctl -n hw.ncpu",
        "sysctl -n hw.physicalcpu",
        "sysctl -n hw.memsize",
    ]


@pytest.mark.asyncio
async def test_detect_falls_back_to_defaults(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(resources.platform, "system", lambda: "Darwin")
    run_cmd = FakeRunCommand({"sysctl": FakeCommandResult(exit_code=1)})

    res = await HostResources.detect(run_cmd)

    assert res == HostResources(logical_cpus=2, physical_cpus=2, total_ram_gb=8)


def test_build_env():
    res = HostResources(logical_cpus=8, physical_cpus=4, total_ram_gb=16)

    env = build_env(res, BuildSettings(github_token="token"))
    assert env["MAKEFLAGS"] == "-j5"
    assert env["NPROC"] == "5"
    assert env["COMPOSER_MEMORY_LIMIT"] == "4G"
    assert env["NODE_OPTIONS"] == "--max-old-space-size=8192"
    assert env["GITHUB_TOKEN"] == "token"


def test_build_env_overrides():
    res = HostResources(logical_cpus=8, physical_cpus=4, total_ram_gb=16)

    env = build_env(res, BuildSettings(parallel_jobs=3, composer_memory_limit="1G"))
    assert env["MAKEFLAGS"] == "-j3"
    assert env["MAKE_JOBS"] == "3"
    assert env["COMPOSER_MEMORY_LIMIT"] == "1G"
    assert "GITHUB_TOKEN" not in env
