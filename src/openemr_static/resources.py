"""Detection of the host's CPUs and memory and derivation of the build
parallelism from them.

"""

import os
import platform
import re
from dataclasses import dataclass

import aiofiles
from obs_package_update.util import RunCommand

from openemr_static.data import BuildSettings
from openemr_static.logger import LOGGER

_FALLBACK_CPUS = 2
_FALLBACK_RAM_GB = 8

_MEMINFO_RE = re.compile(r"^MemTotal:\s+(?P<kb>\d+)\s+kB", re.MULTILINE)


@dataclass(frozen=True)
class HostResources:
    logical_cpus: int
    physical_cpus: int
    total_ram_gb: int

    @property
    def parallel_jobs(self) -> int:
        """One job more than physical cores, bounded by the logical cores and
        at least 2.

        """
        return max(min(self.physical_cpus + 1, self.logical_cpus), 2)

    @property
    def composer_memory_limit(self) -> str:
        return f"{min(max(self.total_ram_gb // 2, 1), 4)}G"

    @property
    def node_max_old_space_size(self) -> int:
        """Heap limit for node in MB."""
        return self.total_ram_gb * 512

    @property
    def vm_ram_gb(self) -> int:
        """Memory assigned to a build VM: half of the host, 4 to 16 GB."""
        return min(max(self.total_ram_gb // 2, 4), 16)

    @staticmethod
    async def detect(run_cmd: RunCommand | None = None) -> "HostResources":
        run_cmd = run_cmd or RunCommand(logger=LOGGER)
        system = platform.system()

        async def sysctl(name: str) -> int | None:
            res = await run_cmd(f"sysctl -n {name}", raise_on_error=False)
            try:
                return int(res.stdout.strip()) if res.exit_code == 0 else None
            except ValueError:
                return None

        logical: int | None
        physical: int | None
        ram_bytes: int | None

        if system == "Darwin":
            logical = await sysctl("hw.ncpu")
            physical = await sysctl("hw.physicalcpu")
            ram_bytes = await sysctl("hw.memsize")
        elif system == "FreeBSD":
            logical = await sysctl("hw.ncpu")
            physical = logical
            ram_bytes = await sysctl("hw.physmem")
        else:
            logical = os.cpu_count()
            physical = None
            ram_bytes = None
            try:
                async with aiofiles.open("/proc/cpuinfo", "r") as cpuinfo:
                    physical = count_physical_cores(await cpuinfo.read())
                async with aiofiles.open("/proc/meminfo", "r") as meminfo:
                    ram_kb = parse_meminfo(await meminfo.read())
                    ram_bytes = ram_kb * 1024 if ram_kb is not None else None
            except OSError as exc:
                LOGGER.warning("Could not read /proc: %s", exc)

        if not logical:
            LOGGER.warning(
                "Could not detect the number of CPUs, assuming %d", _FALLBACK_CPUS
            )
            logical = _FALLBACK_CPUS
        if not physical:
            physical = logical
        if not ram_bytes:
            LOGGER.warning(
                "Could not detect the installed memory, assuming %d GB",
                _FALLBACK_RAM_GB,
            )
            total_ram_gb = _FALLBACK_RAM_GB
        else:
            total_ram_gb = max(ram_bytes // 1024**3, 1)

        resources = HostResources(
            logical_cpus=logical, physical_cpus=physical, total_ram_gb=total_ram_gb
        )
        LOGGER.info(
            "System resources: %d CPUs (%d physical), %d GB RAM",
            resources.logical_cpus,
            resources.physical_cpus,
            resources.total_ram_gb,
        )
        return resources


def parse_meminfo(text: str) -> int | None:
    """Returns ``MemTotal`` from the contents of :file:`/proc/meminfo` in kB."""
    if match := _MEMINFO_RE.search(text):
        return int(match.group("kb"))
    return None


def count_physical_cores(cpuinfo: str) -> int | None:
    """Counts the distinct ``(physical id, core id)`` pairs in the contents of
    :file:`/proc/cpuinfo`. Returns ``None`` if the kernel does not report core
    ids (e.g. on most aarch64 machines).

    """
    cores: set[tuple[str, str]] = set()
    physical_id = "0"
    for line in cpuinfo.splitlines():
        key, _, value = line.partition(":")
        key = key.strip()
        if key == "physical id":
            physical_id = value.strip()
        elif key == "core id":
            cores.add((physical_id, value.strip()))
    return len(cores) or None


def build_env(resources: HostResources, settings: BuildSettings) -> dict[str, str]:
    """Environment for the toolchain steps of a build (make, composer, npm)."""
    jobs = settings.parallel_jobs or resources.parallel_jobs
    env = {
        "MAKEFLAGS": f"-j{jobs}",
        "MAKE_JOBS": str(jobs),
        "NPROC": str(jobs),
        "COMPOSER_MEMORY_LIMIT": settings.composer_memory_limit
        or resources.composer_memory_limit,
        "COMPOSER_PROCESS_TIMEOUT": "0",
        "NODE_OPTIONS": f"--max-old-space-size={resources.node_max_old_space_size}",
        "npm_config_yes": "true",
        "npm_config_loglevel": "warn",
        "CI": "true",
        "PYTHONUNBUFFERED": "1",
        "PHP_BIN_STREAM": "1",
    }
    if settings.github_token:
        env["GITHUB_TOKEN"] = settings.github_token
    return env
