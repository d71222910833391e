"""FreeBSD virtual machines in QEMU with hvf acceleration (macOS hosts)."""

import asyncio
import os
import pathlib
import platform
import signal
from dataclasses import dataclass
from dataclasses import field
from typing import Literal

import aiofiles
import aiofiles.os
from obs_package_update.util import RunCommand

from openemr_static.download import decompress_xz
from openemr_static.download import download_file
from openemr_static.logger import LOGGER

run_cmd = RunCommand(logger=LOGGER)

_QEMU_ARCH_T = Literal["aarch64", "x86_64"]

#: locations of the UEFI firmware that Homebrew's qemu ships
EDK2_FIRMWARE_PATHS = (
    pathlib.Path("/opt/homebrew/share/qemu/edk2-aarch64-code.fd"),
    pathlib.Path("/usr/local/share/qemu/edk2-aarch64-code.fd"),
)

FREEBSD_IMAGES_URL = "https://download.freebsd.org/releases/VM-IMAGES"


def host_qemu_arch(machine: str | None = None) -> _QEMU_ARCH_T:
    machine = machine or platform.machine()
    return "aarch64" if machine in ("arm64", "aarch64") else "x86_64"


def freebsd_image_name(version: str, arch: _QEMU_ARCH_T) -> str:
    if arch == "aarch64":
        return f"FreeBSD-{version}-RELEASE-arm64-aarch64-ufs.qcow2"
    return f"FreeBSD-{version}-RELEASE-amd64-ufs.qcow2"


def freebsd_image_url(version: str, arch: _QEMU_ARCH_T) -> str:
    """URL of the xz compressed qcow2 image of the FreeBSD release."""
    vm_arch = "aarch64" if arch == "aarch64" else "amd64"
    return (
        f"{FREEBSD_IMAGES_URL}/{version}-RELEASE/{vm_arch}/Latest/"
        f"{freebsd_image_name(version, arch)}.xz"
    )


def find_edk2_firmware() -> pathlib.Path:
    """
    Raises:
        :py:class:`RuntimeError`: if the UEFI firmware is not installed

    """
    for path in EDK2_FIRMWARE_PATHS:
        if path.is_file():
            return path
    raise RuntimeError(
        "UEFI firmware for aarch64 not found, please install QEMU via Homebrew: "
        "brew install qemu"
    )


async def prepare_vm_image(
    version: str,
    arch: _QEMU_ARCH_T,
    dest_dir: pathlib.Path,
    size: str,
    attempts: int = 5,
) -> pathlib.Path:
    """Downloads the FreeBSD ``version`` image into ``dest_dir`` unless it is
    already there, decompresses it and grows the disk to ``size``.

    """
    image = dest_dir / freebsd_image_name(version, arch)
    if await aiofiles.os.path.isfile(image):
        LOGGER.info("Using existing FreeBSD image %s", image)
        return image

    compressed = await download_file(
        freebsd_image_url(version, arch),
        dest_dir / f"{image.name}.xz",
        attempts=attempts,
        delay=5,
    )
    await decompress_xz(compressed, image)
    await run_cmd(f"qemu-img resize {image} {size}")
    return image


@dataclass
class QemuMachine:
    arch: _QEMU_ARCH_T
    image: pathlib.Path
    memory_gb: int
    cpus: int

    #: host port of the telnet serial console
    serial_port: int

    #: user network port forwards, host port -> guest port
    host_forwards: dict[int, int] = field(default_factory=dict)

    #: directory exported to the guest via 9p with the mount tag ``shared``
    share_dir: pathlib.Path | None = None

    firmware: pathlib.Path | None = None

    #: let qemu fork into the background, the pid is read from ``pid_file``
    daemonize: bool = False
    pid_file: pathlib.Path | None = None

    log_file: pathlib.Path | None = None

    pid: int | None = None
    _process: asyncio.subprocess.Process | None = field(default=None, repr=False)

    @property
    def binary(self) -> str:
        return f"qemu-system-{self.arch}"

    def command(self) -> list[str]:
        if self.arch == "aarch64":
            machine = ["-M", "virt,accel=hvf", "-cpu", "host"]
        else:
            machine = ["-M", "q35,accel=hvf", "-cpu", "host"]

        hostfwd = "".join(
            f",hostfwd=tcp::{host}-:{guest}"
            for host, guest in self.host_forwards.items()
        )
        cmd = [
            self.binary,
            "-m",
            f"{self.memory_gb}G",
            "-smp",
            str(self.cpus),
            *machine,
            "-drive",
            f"if=virtio,file={self.image},id=hd0",
            "-device",
            "virtio-net-pci,netdev=net0",
            "-netdev",
            f"user,id=net0{hostfwd}",
            "-serial",
            f"telnet::{self.serial_port},server,nowait",
            "-display",
            "none",
        ]
        if self.share_dir:
            cmd += [
                "-fsdev",
                f"local,id=fsdev0,path={self.share_dir},security_model=none",
                "-device",
                "virtio-9p-pci,id=fs0,fsdev=fsdev0,mount_tag=shared",
            ]
        if self.firmware:
            cmd += ["-bios", str(self.firmware)]
        if self.daemonize:
            if not self.pid_file:
                raise ValueError("A daemonized qemu requires a pid file")
            cmd += ["-daemonize", "-pidfile", str(self.pid_file)]
        return cmd

    async def start(self) -> int:
        cmd = self.command()
        LOGGER.info("Starting VM: %s", " ".join(cmd))

        log = open(self.log_file, "ab") if self.log_file else asyncio.subprocess.DEVNULL
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd, stdout=log, stderr=asyncio.subprocess.STDOUT
            )
        finally:
            if not isinstance(log, int):
                log.close()

        if self.daemonize:
            assert self.pid_file
            if (ret := await self._process.wait()) != 0:
                raise RuntimeError(f"qemu failed to start (exit code {ret})")
            async with aiofiles.open(self.pid_file, "r") as pid_file:
                self.pid = int((await pid_file.read()).strip())
        else:
            self.pid = self._process.pid

        LOGGER.info("VM started (PID %d)", self.pid)
        return self.pid

    def is_running(self) -> bool:
        if self.pid is None:
            return False
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    async def stop(self, grace_period: float = 1) -> None:
        """Terminates the VM, killing it if it is still alive after
        ``grace_period`` seconds.

        """
        if not self.is_running():
            return
        assert self.pid is not None

        LOGGER.info("Stopping VM (PID %d)", self.pid)
        os.kill(self.pid, signal.SIGTERM)
        await asyncio.sleep(grace_period)
        if self.is_running():
            os.kill(self.pid, signal.SIGKILL)
        if self._process and not self.daemonize:
            await self._process.wait()
        self.pid = None
