import os
import pathlib

import pytest
from conftest import FakeRunCommand
from conftest import make_file

from openemr_static import server
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import LocatedArtifacts
from openemr_static.server import count_files
from openemr_static.server import extract_phar
from openemr_static.server import render_runtime_files
from openemr_static.server import run_docker_web_server
from openemr_static.target import BuildTarget


def _fake_php(files: list[str]) -> FakeRunCommand:
    """php that "extracts" ``files`` into the directory passed last."""

    def _extract(cmd: str, cwd, env) -> None:
        dest = pathlib.Path(cmd.split()[-1])
        for name in files:
            make_file(dest / name, "<?php")

    return FakeRunCommand(side_effect=_extract)


@pytest.mark.asyncio
async def test_extract_phar(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    fake = _fake_php(["interface/main/main.php", "index.php"])
    monkeypatch.setattr(server, "run_cmd", fake)
    dest = tmp_path / "openemr"
    make_file(dest / "stale.php")

    files = await extract_phar(
        "/srv/php-cli",
        tmp_path / "openemr.phar",
        dest,
        php_ini=tmp_path / "php.ini",
        env={"LD_LIBRARY_PATH": "/srv/lib"},
    )

    assert files == 2
    assert not (dest / "stale.php").exists()
    cmd, _, env = fake.calls[0]
    assert cmd.startswith(
        f"/srv/php-cli -c {tmp_path / 'php.ini'} -d memory_limit=1024M "
        "-d max_execution_time=0 "
    )
    assert cmd.endswith(f"{tmp_path / 'openemr.phar'} {dest}")
    assert env["LD_LIBRARY_PATH"] == "/srv/lib"


@pytest.mark.asyncio
async def test_extract_phar_without_files(
    tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
):
    monkeypatch.setattr(server, "run_cmd", _fake_php([]))
    with pytest.raises(RuntimeError, match="produced no files"):
        await extract_phar("php", tmp_path / "openemr.phar", tmp_path / "openemr")


def test_count_files(tmp_path: pathlib.Path):
    make_file(tmp_path / "a" / "b.php")
    make_file(tmp_path / "c.php")
    (tmp_path / "empty").mkdir()
    assert count_files(tmp_path) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("with_php_ini", [True, False])
async def test_render_runtime_files(tmp_path: pathlib.Path, with_php_ini: bool):
    platform_dir = tmp_path / "linux_arm64"
    paths = {
        ArtifactKind.PHP_CLI: make_file(platform_dir / "php-cli-v7_0_4-linux-arm64", "php", True),
        ArtifactKind.PHAR: make_file(platform_dir / "openemr-v7_0_4.phar", "phar"),
    }
    if with_php_ini:
        paths[ArtifactKind.PHP_INI] = make_file(platform_dir / "php.ini", "memory_limit=1G")
    located = LocatedArtifacts(target=BuildTarget.LINUX_ARM64, paths=paths)

    image = await render_runtime_files(platform_dir, BuildTarget.LINUX_ARM64, located)

    assert image == "openemr-static:arm64"
    assert (platform_dir / "php-cli").read_text() == "php"
    assert (platform_dir / "openemr.phar").read_text() == "phar"
    dockerfile = (platform_dir / "Dockerfile").read_text()
    assert dockerfile.startswith("FROM ubuntu:24.04\n")
    assert ("COPY php.ini" in dockerfile) == with_php_ini
    assert "platform: linux/arm64" in (platform_dir / "docker-compose.yml").read_text()
    for script in ("docker-entrypoint.sh", "docker-entrypoint-wrapper.sh"):
        assert os.access(platform_dir / script, os.X_OK)
    assert "'/app/openemr-extracted'" in (platform_dir / "docker-entrypoint.sh").read_text()


@pytest.mark.asyncio
async def test_render_runtime_files_requires_php(tmp_path: pathlib.Path):
    located = LocatedArtifacts(target=BuildTarget.LINUX_AMD64, paths={})
    with pytest.raises(RuntimeError, match="openemr-static build linux-amd64"):
        await render_runtime_files(tmp_path, BuildTarget.LINUX_AMD64, located)


@pytest.mark.asyncio
@pytest.mark.parametrize("target", [BuildTarget.MACOS, BuildTarget.FREEBSD])
async def test_docker_only_for_linux(tmp_path: pathlib.Path, target: BuildTarget):
    with pytest.raises(ValueError, match="does not run in docker"):
        await run_docker_web_server(tmp_path, target)
