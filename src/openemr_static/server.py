"""Running OpenEMR from the built artifacts: with PHP's built-in web server on
macOS, in a docker container on Linux and inside a FreeBSD virtual machine.

"""

import asyncio
import os
import pathlib
import platform
import shutil
import tempfile

import aiofiles.os
import aiofiles.tempfile
from obs_package_update.util import CommandError
from obs_package_update.util import RunCommand

from openemr_static.data import DEFAULT_DOCKER_BASE_IMAGE
from openemr_static.data import DEFAULT_FREEBSD_VERSION
from openemr_static.fileserver import FileServer
from openemr_static.logger import LOGGER
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import LocatedArtifacts
from openemr_static.manifest import locate_target_artifacts
from openemr_static.qemu import QemuMachine
from openemr_static.qemu import find_edk2_firmware
from openemr_static.qemu import host_qemu_arch
from openemr_static.qemu import prepare_vm_image
from openemr_static.serial import SerialConsole
from openemr_static.target import BuildTarget
from openemr_static.templates import DOCKER_COMPOSE
from openemr_static.templates import DOCKER_ENTRYPOINT
from openemr_static.templates import DOCKER_ENTRYPOINT_WRAPPER
from openemr_static.templates import EXTRACT_PHAR_PHP
from openemr_static.templates import ROUTER_PHP
from openemr_static.templates import RUNTIME_DOCKERFILE
from openemr_static.util import ensure_absent
from openemr_static.util import find_free_port
from openemr_static.util import is_port_in_use
from openemr_static.util import make_executable
from openemr_static.util import require_tools
from openemr_static.util import wait_for_port
from openemr_static.util import write_to_file

run_cmd = RunCommand(logger=LOGGER)

#: printed by the extraction script on success
EXTRACT_MARKER = "EXTRACT_OK"

EXTRACT_MEMORY_LIMIT = "1024M"

#: port of the web server inside the runtime container
CONTAINER_PORT = 8080

#: web root inside the FreeBSD VM
VM_WEB_ROOT = "/build/openemr"

#: size of the disk of the runtime VM
VM_DISK_SIZE = "20G"


def count_files(directory: pathlib.Path) -> int:
    return sum(1 for p in directory.rglob("*") if p.is_file())


async def extract_phar(
    php: pathlib.Path | str,
    phar: pathlib.Path,
    dest: pathlib.Path,
    php_ini: pathlib.Path | None = None,
    env: dict[str, str] | None = None,
) -> int:
    """Extracts ``phar`` into ``dest`` (replacing an existing directory) with
    the php binary ``php``. Returns the number of extracted files.

    Raises:
        :py:class:`RuntimeError`: if nothing was extracted

    """
    await ensure_absent(dest)
    await aiofiles.os.makedirs(dest)

    async with aiofiles.tempfile.TemporaryDirectory() as tmp_dir:
        script = pathlib.Path(tmp_dir) / "extract-phar.php"
        await write_to_file(
            script,
            EXTRACT_PHAR_PHP.render(
                memory_limit=EXTRACT_MEMORY_LIMIT, marker=EXTRACT_MARKER
            ),
        )
        ini_arg = f"-c {php_ini} " if php_ini else ""
        LOGGER.info("Extracting %s to %s", phar, dest)
        await run_cmd(
            f"{php} {ini_arg}-d memory_limit={EXTRACT_MEMORY_LIMIT} "
            f"-d max_execution_time=0 {script} {phar} {dest}",
            env={**os.environ, **(env or {})},
        )

    if not (files := await asyncio.to_thread(count_files, dest)):
        raise RuntimeError(f"Extracting {phar} produced no files")
    LOGGER.info("Extracted %d files", files)
    return files


async def _serve(cmd: list[str], cwd: pathlib.Path, env: dict[str, str]) -> int:
    """Runs the server ``cmd`` with the terminal attached until it exits or
    the task is cancelled.

    """
    LOGGER.debug("Starting %s", " ".join(cmd))
    proc = await asyncio.create_subprocess_exec(
        *cmd, cwd=str(cwd), env={**os.environ, **env}
    )
    try:
        return await proc.wait()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.terminate()
            await proc.wait()
        raise


async def run_local_web_server(project_root: pathlib.Path, port: int = 8080) -> int:
    """Serves OpenEMR with the built php-cli and PHP's built-in web server."""
    target = BuildTarget.MACOS
    located = await locate_target_artifacts(project_root, target)
    php = located.require(ArtifactKind.PHP_CLI)
    phar = located.require(ArtifactKind.PHAR)
    php_ini = located.get(ArtifactKind.PHP_INI)

    async with aiofiles.tempfile.TemporaryDirectory(prefix="openemr-web-") as tmp:
        web_root = pathlib.Path(tmp) / "openemr"
        await extract_phar(php, phar, web_root, php_ini)

        if is_port_in_use(port):
            LOGGER.warning(
                "Port %d is already in use, the web server will fail to bind", port
            )

        router = pathlib.Path(tmp) / "router.php"
        await write_to_file(router, ROUTER_PHP.render(web_root=web_root))

        cmd = [str(php)]
        if php_ini:
            cmd += ["-c", str(php_ini)]
        cmd += ["-S", f"0.0.0.0:{port}", "-t", str(web_root), str(router)]

        print(f"OpenEMR is available at http://localhost:{port}, press Ctrl+C to stop")
        return await _serve(cmd, cwd=web_root, env={"OPENEMR_WEB_ROOT": str(web_root)})


async def docker_compose_command() -> str:
    """Returns ``docker compose`` or ``docker-compose``, whichever works.

    Raises:
        :py:class:`RuntimeError`: if neither is installed

    """
    if (await run_cmd("docker compose version", raise_on_error=False)).exit_code == 0:
        return "docker compose"
    if shutil.which("docker-compose"):
        return "docker-compose"
    raise RuntimeError(
        "docker compose is not available, please install the compose plugin"
    )


async def render_runtime_files(
    platform_dir: pathlib.Path,
    target: BuildTarget,
    located: LocatedArtifacts,
    base_image: str = DEFAULT_DOCKER_BASE_IMAGE,
) -> str:
    """Writes the runtime image's build context into ``platform_dir`` and
    returns the image name.

    """
    arch = target.artifact_arch("")
    image = f"openemr-static:{arch}"
    php_ini = located.get(ArtifactKind.PHP_INI)

    for src, name in (
        (located.require(ArtifactKind.PHP_CLI), "php-cli"),
        (located.require(ArtifactKind.PHAR), "openemr.phar"),
        (php_ini, "php.ini"),
    ):
        if src and src.resolve() != (platform_dir / name).resolve():
            await asyncio.to_thread(shutil.copy2, src, platform_dir / name)

    await write_to_file(
        platform_dir / "Dockerfile",
        RUNTIME_DOCKERFILE.render(
            base_image=base_image, php_ini=bool(php_ini), container_port=CONTAINER_PORT
        ),
    )
    await write_to_file(
        platform_dir / "docker-compose.yml",
        DOCKER_COMPOSE.render(
            image=image,
            platform=target.docker_platform,
            container_port=CONTAINER_PORT,
        ),
    )
    for name, contents in (
        (
            "docker-entrypoint.sh",
            DOCKER_ENTRYPOINT.render(
                container_port=CONTAINER_PORT,
                extract_php=EXTRACT_PHAR_PHP.render(
                    memory_limit=EXTRACT_MEMORY_LIMIT, marker=EXTRACT_MARKER
                ),
                router_php=ROUTER_PHP.render(web_root="/app/openemr-extracted"),
            ),
        ),
        ("docker-entrypoint-wrapper.sh", DOCKER_ENTRYPOINT_WRAPPER.render()),
    ):
        await write_to_file(platform_dir / name, contents + "\n")
        await make_executable(platform_dir / name)

    return image


async def run_docker_web_server(
    project_root: pathlib.Path, target: BuildTarget, port: int = 8080
) -> int:
    """Builds the runtime image of a Linux target and starts it with docker
    compose.

    """
    if not target.is_linux:
        raise ValueError(f"{target} does not run in docker")

    require_tools(["docker"], {"docker": "https://docs.docker.com/engine/install/"})
    compose = await docker_compose_command()

    platform_dir = project_root / target.platform_dir
    located = await locate_target_artifacts(project_root, target)
    image = await render_runtime_files(platform_dir, target, located)

    LOGGER.info("Building the runtime image %s", image)
    await run_cmd(
        f"docker build --platform {target.docker_platform} -t {image} .",
        cwd=str(platform_dir),
    )

    print(f"OpenEMR will be available at http://localhost:{port}")
    return await _serve(
        [*compose.split(), "-f", "docker-compose.yml", "up"],
        cwd=platform_dir,
        env={"OPENEMR_PORT": str(port)},
    )


async def _stage_vm_files(
    located: LocatedArtifacts, shared_dir: pathlib.Path
) -> list[str]:
    """Copies everything the VM fetches into ``shared_dir`` and returns the
    names of the bundled libraries.

    """
    php = located.require(ArtifactKind.PHP_CLI)
    phar = located.require(ArtifactKind.PHAR)
    await asyncio.to_thread(shutil.copy2, php, shared_dir / "php")
    await asyncio.to_thread(shutil.copy2, phar, shared_dir / "openemr.phar")
    if php_ini := located.get(ArtifactKind.PHP_INI):
        await asyncio.to_thread(shutil.copy2, php_ini, shared_dir / "php.ini")

    await write_to_file(shared_dir / "router.php", ROUTER_PHP.render(web_root=VM_WEB_ROOT))
    await write_to_file(
        shared_dir / "extract.php",
        EXTRACT_PHAR_PHP.render(memory_limit=EXTRACT_MEMORY_LIMIT, marker=EXTRACT_MARKER),
    )

    libs: list[str] = []
    if lib_dir := located.get(ArtifactKind.LIB_DIR):
        await asyncio.to_thread(shutil.copytree, lib_dir, shared_dir / "lib")
        libs = sorted(p.name for p in (shared_dir / "lib").iterdir() if p.is_file())
    else:
        LOGGER.warning(
            "No lib/ directory with the bundled libraries found, php may fail to start"
        )
    return libs


async def _provision_vm(
    console: SerialConsole, http_port: int, libs: list[str], with_php_ini: bool
) -> None:
    base_url = f"http://10.0.2.2:{http_port}"

    await console.login()
    await console.run(
        "gpart recover vtbd0; gpart resize -i 3 vtbd0; growfs -y /dev/vtbd0p3; df -h /"
    )
    await console.run("mkdir -p /build/lib && cd /build")

    await console.run_checked(
        f"fetch -o php {base_url}/php && chmod +x php", "DOWNLOAD_PHP_OK"
    )
    await console.run_checked(
        f"fetch -o openemr.phar {base_url}/openemr.phar", "DOWNLOAD_PHAR_OK"
    )
    if with_php_ini:
        await console.run_checked(f"fetch -o php.ini {base_url}/php.ini", "PHP_INI_OK")
    await console.run_checked(
        f"fetch -o router.php {base_url}/router.php", "ROUTER_DOWNLOADED"
    )
    await console.run_checked(
        f"fetch -o extract.php {base_url}/extract.php", "EXTRACT_SCRIPT_OK"
    )

    if libs:
        await console.run_checked(
            f"cd /build/lib && for lib in {' '.join(libs)}; do "
            f'fetch -q -o "$lib" "{base_url}/lib/$lib" || echo "Failed: $lib"; '
            "done && cd /build",
            "LIB_DOWNLOAD_DONE",
            timeout=120,
        )
    await console.run("export LD_LIBRARY_PATH=/build/lib:$LD_LIBRARY_PATH")

    await console.run_checked(
        f"./php -d memory_limit={EXTRACT_MEMORY_LIMIT} /build/extract.php "
        f"/build/openemr.phar {VM_WEB_ROOT}",
        EXTRACT_MARKER,
        timeout=300,
    )

    ini_arg = "-c /build/php.ini " if with_php_ini else ""
    await console.run(
        f"./php {ini_arg}-d memory_limit=512M -S 0.0.0.0:80 -t {VM_WEB_ROOT} "
        "/build/router.php > /tmp/php-server.log 2>&1 &"
    )
    await console.run_checked(
        "sleep 3 && sockstat -4 -l -p 80 | grep -q php", "SERVER_READY", timeout=60
    )


async def run_freebsd_vm(
    project_root: pathlib.Path,
    port: int = 8080,
    version: str = DEFAULT_FREEBSD_VERSION,
    memory_gb: int = 4,
    cpus: int = 2,
) -> None:
    """Boots a fresh FreeBSD VM, copies the FreeBSD artifacts into it and
    serves OpenEMR on ``port`` until interrupted.

    """
    if platform.system() != "Darwin":
        raise RuntimeError("Running the FreeBSD VM requires a macOS host with hvf")

    arch = host_qemu_arch()
    require_tools(
        ["qemu-img", f"qemu-system-{arch}"],
        {"qemu-img": "brew install qemu", f"qemu-system-{arch}": "brew install qemu"},
    )
    firmware = find_edk2_firmware() if arch == "aarch64" else None

    located = await locate_target_artifacts(project_root, BuildTarget.FREEBSD)

    tmp_dir = pathlib.Path(
        await asyncio.to_thread(tempfile.mkdtemp, prefix="openemr-freebsd-vm-")
    )
    qemu: QemuMachine | None = None
    try:
        shared_dir = tmp_dir / "shared"
        await aiofiles.os.makedirs(shared_dir)
        libs = await _stage_vm_files(located, shared_dir)

        image = await prepare_vm_image(version, arch, tmp_dir, VM_DISK_SIZE)

        if is_port_in_use(port):
            raise RuntimeError(f"Port {port} is already in use")
        serial_port = find_free_port(4440, 4500)
        http_port = find_free_port(8001, 8100)

        qemu = QemuMachine(
            arch=arch,
            image=image,
            memory_gb=memory_gb,
            cpus=cpus,
            serial_port=serial_port,
            host_forwards={port: 80},
            share_dir=shared_dir,
            firmware=firmware,
            daemonize=True,
            pid_file=tmp_dir / "qemu.pid",
            log_file=tmp_dir / "qemu.log",
        )

        async with FileServer(shared_dir, http_port):
            await qemu.start()
            await wait_for_port("127.0.0.1", serial_port, timeout=60)
            async with SerialConsole(
                "127.0.0.1", serial_port, transcript=tmp_dir / "serial.log"
            ) as console:
                await _provision_vm(
                    console,
                    http_port,
                    libs,
                    with_php_ini=located.get(ArtifactKind.PHP_INI) is not None,
                )

        print(f"OpenEMR is available at http://localhost:{port}, press Ctrl+C to stop")
        while qemu.is_running():
            await asyncio.sleep(5)
        LOGGER.error("The FreeBSD VM exited")

    except CommandError as cmd_err:
        LOGGER.error("Preparing the VM failed: %s", cmd_err.command_result.stderr)
        raise
    finally:
        if qemu:
            await qemu.stop()
        await ensure_absent(tmp_dir)
