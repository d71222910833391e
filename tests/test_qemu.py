import pathlib

import pytest
from conftest import FakeRunCommand

from openemr_static import qemu
from openemr_static.qemu import QemuMachine
from openemr_static.qemu import freebsd_image_name
from openemr_static.qemu import freebsd_image_url
from openemr_static.qemu import host_qemu_arch
from openemr_static.qemu import prepare_vm_image


@pytest.mark.parametrize(
    "machine,arch", [("arm64", "aarch64"), ("aarch64", "aarch64"), ("x86_64", "x86_64")]
)
def test_host_qemu_arch(machine: str, arch: str):
    assert host_qemu_arch(machine) == arch


def test_freebsd_images():
    assert (
        freebsd_image_url("15.0", "aarch64")
        == "https://download.freebsd.org/releases/VM-IMAGES/15.0-RELEASE/aarch64/"
        "Latest/FreeBSD-15.0-RELEASE-arm64-aarch64-ufs.qcow2.xz"
    )
    assert (
        freebsd_image_url("14.3", "x86_64")
        == "https://download.freebsd.org/releases/VM-IMAGES/14.3-RELEASE/amd64/"
        "Latest/FreeBSD-14.3-RELEASE-amd64-ufs.qcow2.xz"
    )
    assert freebsd_image_name("14.3", "x86_64") == "FreeBSD-14.3-RELEASE-amd64-ufs.qcow2"


def test_aarch64_command():
    machine = QemuMachine(
        arch="aarch64",
        image=pathlib.Path("/vm/freebsd.qcow2"),
        memory_gb=8,
        cpus=4,
        serial_port=4444,
        host_forwards={2222: 22, 8080: 8080},
        share_dir=pathlib.Path("/srv/share"),
        firmware=pathlib.Path("/opt/homebrew/share/qemu/edk2-aarch64-code.fd"),
    )

    assert machine.command() == [
        "qemu-system-aarch64",
        "-m",
        "8G",
        "-smp",
        "4",
        "-M",
        "virt,accel=hvf",
        "-cpu",
        "host",
        "-drive",
        "if=virtio,file=/vm/freebsd.qcow2,id=hd0",
        "-device",
        "virtio-net-pci,netdev=net0",
        "-netdev",
        "user,id=net0,hostfwd=tcp::2222-:22,hostfwd=tcp::8080-:8080",
        "-serial",
        "telnet::4444,server,nowait",
        "-display",
        "none",
        "-fsdev",
        "local,id=fsdev0,path=/srv/share,security_model=none",
        "-device",
        "virtio-9p-pci,id=fs0,fsdev=fsdev0,mount_tag=shared",
        "-bios",
        "/opt/homebrew/share/qemu/edk2-aarch64-code.fd",
    ]


def test_daemonized_x86_64_command():
    machine = QemuMachine(
        arch="x86_64",
        image=pathlib.Path("/vm/freebsd.qcow2"),
        memory_gb=4,
        cpus=2,
        serial_port=4444,
        daemonize=True,
        pid_file=pathlib.Path("/tmp/qemu.pid"),
    )

    cmd = machine.command()
    assert cmd[0] == "qemu-system-x86_64"
    assert cmd[cmd.index("-M") + 1] == "q35,accel=hvf"
    assert cmd[cmd.index("-netdev") + 1] == "user,id=net0"
    assert "-bios" not in cmd
    assert cmd[-3:] == ["-daemonize", "-pidfile", "/tmp/qemu.pid"]


def test_daemonize_requires_a_pid_file():
    machine = QemuMachine(
        arch="x86_64",
        image=pathlib.Path("/vm/freebsd.qcow2"),
        memory_gb=4,
        cpus=2,
        serial_port=4444,
        daemonize=True,
    )
    with pytest.raises(ValueError, match="requires a pid file"):
        machine.command()


def test_not_running_without_pid():
    machine = QemuMachine(
        arch="x86_64",
        image=pathlib.Path("/vm/freebsd.qcow2"),
        memory_gb=4,
        cpus=2,
        serial_port=4444,
    )
    assert not machine.is_running()


@pytest.mark.asyncio
async def test_prepare_reuses_an_existing_image(
    tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
):
    fake = FakeRunCommand()
    monkeypatch.setattr(qemu, "run_cmd", fake)
    image = tmp_path / freebsd_image_name("15.0", "aarch64")
    image.write_bytes(b"qcow2")

    assert await prepare_vm_image("15.0", "aarch64", tmp_path, "40G") == image
    assert fake.commands == []


@pytest.mark.asyncio
async def test_prepare_downloads_and_resizes(
    tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
):
    fake = FakeRunCommand()
    monkeypatch.setattr(qemu, "run_cmd", fake)
    downloads = []

    async def _download_file(url, dest, attempts, delay):
        downloads.append(url)
        dest.write_bytes(b"xz")
        return dest

    async def _decompress_xz(src, dest):
        dest.write_bytes(b"qcow2")
        src.unlink()
        return dest

    monkeypatch.setattr(qemu, "download_file", _download_file)
    monkeypatch.setattr(qemu, "decompress_xz", _decompress_xz)

    image = await prepare_vm_image("15.0", "aarch64", tmp_path, "40G")

    assert image == tmp_path / "FreeBSD-15.0-RELEASE-arm64-aarch64-ufs.qcow2"
    assert downloads == [freebsd_image_url("15.0", "aarch64")]
    assert fake.commands == [f"qemu-img resize {image} 40G"]
