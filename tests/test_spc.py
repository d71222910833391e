import io
import os
import pathlib
import tarfile

import pytest
from conftest import FakeRunCommand
from conftest import make_file

from openemr_static import spc
from openemr_static.spc import SpcRunner
from openemr_static.spc import find_build_output
from openemr_static.spc import install_spc_release
from openemr_static.spc import spc_release_url


@pytest.mark.parametrize(
    "os_name,machine,url",
    [
        (
            "macos",
            "arm64",
            "https://github.com/crazywhalecc/static-php-cli/releases/download/"
            "2.7.9/spc-macos-aarch64.tar.gz",
        ),
        (
            "linux",
            "x86_64",
            "https://github.com/crazywhalecc/static-php-cli/releases/download/"
            "2.7.9/spc-linux-x86_64.tar.gz",
        ),
    ],
)
def test_spc_release_url(os_name: str, machine: str, url: str):
    assert spc_release_url("crazywhalecc/static-php-cli", "2.7.9", os_name, machine) == url


def test_find_build_output(tmp_path: pathlib.Path):
    assert find_build_output(tmp_path, "micro.sfx") is None

    nested = make_file(tmp_path / "source" / "php-src" / "sapi" / "micro" / "micro.sfx")
    assert find_build_output(tmp_path, "micro.sfx") == nested

    buildroot = make_file(tmp_path / "buildroot" / "bin" / "micro.sfx")
    assert find_build_output(tmp_path, "micro.sfx") == buildroot


def _spc_archive() -> bytes:
    data = b"#!/bin/sh\necho spc\n"
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        info = tarfile.TarInfo("spc")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.mark.asyncio
async def test_install_spc_release(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    urls = []

    async def _download_file(url, dest, github_token):
        urls.append((url, github_token))
        dest.write_bytes(_spc_archive())
        return dest

    monkeypatch.setattr(spc, "download_file", _download_file)

    spc_bin = await install_spc_release(
        "crazywhalecc/static-php-cli", "2.7.9", "macos", "arm64", tmp_path, "token"
    )

    assert spc_bin == tmp_path / "spc"
    assert os.access(spc_bin, os.X_OK)
    assert urls == [
        (
            "https://github.com/crazywhalecc/static-php-cli/releases/download/"
            "2.7.9/spc-macos-aarch64.tar.gz",
            "token",
        )
    ]


@pytest.mark.asyncio
async def test_spc_runner(tmp_path: pathlib.Path):
    fake = FakeRunCommand()
    runner = SpcRunner(
        spc_bin=pathlib.Path("/opt/spc"),
        cwd=tmp_path,
        env={"MAKEFLAGS": "-j4"},
        _run_cmd=fake,
    )

    await runner.doctor()
    await runner.download("8.5", "gd,zip")
    await runner.build("gd,zip", sapis=("cli", "micro"))

    assert fake.commands == [
        "/opt/spc doctor --auto-fix",
        "/opt/spc download --with-php=8.5 --for-extensions=gd,zip --retry 5",
        "/opt/spc build --build-cli --build-micro gd,zip",
    ]
    _, cwd, env = fake.calls[0]
    assert cwd == str(tmp_path)
    assert env["MAKEFLAGS"] == "-j4"
    assert env["PATH"] == os.environ["PATH"]


@pytest.mark.asyncio
async def test_spc_combine(tmp_path: pathlib.Path):
    def _combine(cmd: str, cwd, env) -> None:
        output = cmd.split(" -O ")[1].split()[0]
        make_file(pathlib.Path(output), "micro + phar")

    fake = FakeRunCommand(side_effect=_combine)
    runner = SpcRunner(spc_bin=pathlib.Path("/opt/spc"), cwd=tmp_path, _run_cmd=fake)
    phar = tmp_path / "openemr.phar"
    output = tmp_path / "openemr-v7_0_4-macos-arm64"

    assert await runner.combine(phar, output, micro_sfx=tmp_path / "micro.sfx") == output
    assert os.access(output, os.X_OK)
    assert fake.commands == [
        f"/opt/spc micro:combine {phar} -O {output} --with-micro={tmp_path / 'micro.sfx'}"
    ]

    await runner.combine(phar, output, memory_limit="2048M")
    assert fake.commands[-1] == (
        f"php -d memory_limit=2048M /opt/spc micro:combine {phar} -O {output}"
    )


@pytest.mark.asyncio
async def test_spc_combine_without_output(tmp_path: pathlib.Path):
    runner = SpcRunner(
        spc_bin=pathlib.Path("/opt/spc"), cwd=tmp_path, _run_cmd=FakeRunCommand()
    )
    with pytest.raises(RuntimeError, match="Failed to create"):
        await runner.combine(tmp_path / "openemr.phar", tmp_path / "openemr")
