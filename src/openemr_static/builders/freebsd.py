import asyncio
import pathlib
import platform
import tarfile
from dataclasses import dataclass
from typing import ClassVar

import aiofiles.os

from openemr_static.builders import Builder
from openemr_static.data import DEFAULT_PHP_EXTENSIONS
from openemr_static.data import FREEBSD_BUILD_PACKAGES
from openemr_static.data import FREEBSD_PHP_EXTENSIONS
from openemr_static.data import OPENEMR_GIT_URL
from openemr_static.download import download_file
from openemr_static.download import resolve_php_release
from openemr_static.fileserver import FileServer
from openemr_static.logger import LOGGER
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import BuildManifest
from openemr_static.qemu import QemuMachine
from openemr_static.qemu import find_edk2_firmware
from openemr_static.qemu import host_qemu_arch
from openemr_static.qemu import prepare_vm_image
from openemr_static.resources import HostResources
from openemr_static.serial import SerialConsole
from openemr_static.source import PHAR_STUB
from openemr_static.templates import CREATE_PHAR_PHP
from openemr_static.templates import FREEBSD_BUILD
from openemr_static.templates import FREEBSD_ENV
from openemr_static.templates import PREPARE_OPENEMR_SH
from openemr_static.util import find_free_port
from openemr_static.util import make_executable
from openemr_static.util import require_tools
from openemr_static.util import wait_for_port
from openemr_static.util import write_to_file

#: printed by the build script once all artifacts exist
SUCCESS_MARKER = "BUILD FINISHED SUCCESSFULLY"

#: printed by the build script once the artifacts are served
READY_MARKER = "Artifact server is ready"

#: printed by the build script if the artifact server did not come up
SERVER_FAILED_MARKER = "Artifact server did not start"

#: port of the artifact server inside the VM
VM_ARTIFACT_PORT = 8080

#: shell prompt of root in the home directory
BUILD_PROMPT = "~ # "

#: the compilation of PHP and the frontend takes hours on slow hosts
BUILD_TIMEOUT = 6 * 3600

#: the build VM's disk
VM_DISK_SIZE = "30G"

#: packages installed by the build script in addition to the ones that are
#: exported via ``env.sh``
_BUILD_PACKAGES = [
    "git",
    "curl",
    "wget",
    "gmake",
    "autoconf",
    "automake",
    "libtool",
    "pkgconf",
    "bison",
    "re2c",
    "libxml2",
    "libxslt",
    "icu",
    "oniguruma",
    "sqlite3",
    "openssl",
    "libsodium",
    "libzip",
    "libiconv",
    "gettext-runtime",
    "gettext-tools",
    "png",
    "libjpeg-turbo",
    "freetype2",
    "webp",
    "bzip2",
    "llvm",
]

CONFIGURE_FLAGS = [
    "--enable-cli",
    "--enable-cgi",
    "--enable-fpm",
    "--enable-bcmath",
    "--enable-calendar",
    "--enable-exif",
    "--enable-ftp",
    "--enable-intl",
    "--enable-mbstring",
    "--enable-mysqlnd",
    "--enable-opcache",
    "--enable-pcntl",
    "--enable-pdo",
    "--enable-soap",
    "--enable-sockets",
    "--with-gettext=/usr/local",
    "--with-mhash",
    "--with-mysqli=mysqlnd",
    "--with-openssl=/usr/local",
    "--with-pdo-mysql=mysqlnd",
    "--with-sodium=/usr/local",
    "--with-xsl=/usr/local",
    "--with-zip",
    "--with-zlib",
    "--with-curl",
    "--with-pear",
    "--enable-phar",
]


def _extract_tarball(archive: pathlib.Path, dest: pathlib.Path) -> None:
    with tarfile.open(archive, "r:gz") as tar:
        tar.extractall(dest, filter="data")


@dataclass
class FreeBsdBuilder(Builder):
    """Builds PHP from source inside a FreeBSD virtual machine and bundles
    the shared libraries it links against.

    """

    KEEP_WORK_DIR_ON_FAILURE: ClassVar[bool] = True

    @property
    def artifact_dir(self) -> pathlib.Path:
        return self.platform_dir / "dist"

    def packages(self) -> list[str]:
        return _BUILD_PACKAGES + [f"${{{name}}}" for name in FREEBSD_BUILD_PACKAGES]

    def render_env(self, php_version_full: str) -> str:
        extensions = self.settings.php_extensions
        if extensions == DEFAULT_PHP_EXTENSIONS:
            extensions = FREEBSD_PHP_EXTENSIONS
        else:
            LOGGER.warning(
                "The FreeBSD build compiles a fixed set of extensions, "
                "ignoring the requested ones: %s",
                ",".join(extensions),
            )
        return FREEBSD_ENV.render(
            variables={
                "OPENEMR_TAG": self.settings.openemr_version,
                "PHP_VERSION": self.settings.php_version,
                "PHP_VERSION_FULL": php_version_full,
                "ARCH": self.arch,
                "PHP_EXTENSIONS": ",".join(extensions),
                **FREEBSD_BUILD_PACKAGES,
            }
        )

    def render_build_script(self) -> str:
        return FREEBSD_BUILD.render(
            packages=self.packages(),
            prepare_openemr=PREPARE_OPENEMR_SH.render(
                build_dir="/build",
                openemr_git_url=OPENEMR_GIT_URL,
                filter_npm_output=True,
                create_phar_php=CREATE_PHAR_PHP.render(stub=PHAR_STUB),
            ),
            configure_flags=CONFIGURE_FLAGS,
            success_marker=SUCCESS_MARKER,
            ready_marker=READY_MARKER,
            server_failed_marker=SERVER_FAILED_MARKER,
            artifact_port=VM_ARTIFACT_PORT,
        )

    async def _run_build(self, console: SerialConsole, http_port: int) -> None:
        await console.login(prompt=BUILD_PROMPT)
        await console.run(
            "gpart recover vtbd0; gpart resize -i 3 vtbd0; growfs -y /dev/vtbd0p3",
            prompt=BUILD_PROMPT,
        )
        await console.run(
            "pkg install -y bash curl python3", prompt=BUILD_PROMPT, timeout=1800
        )
        for src, dest in (("env.sh", "/tmp/env.sh"), ("freebsd-build.sh", "/tmp/build.sh")):
            await console.run_checked(
                f"fetch -o {dest} http://10.0.2.2:{http_port}/{src}",
                "FETCH_OK",
                prompt=BUILD_PROMPT,
            )

        LOGGER.info("Running the build inside the VM, this takes a long time")
        await console.send_line("bash /tmp/build.sh")
        built = False
        while True:
            index, _ = await console.expect(
                [SUCCESS_MARKER, READY_MARKER, SERVER_FAILED_MARKER, BUILD_PROMPT],
                timeout=BUILD_TIMEOUT,
            )
            if index == 0:
                LOGGER.info("Build inside the VM finished")
                built = True
            elif index == 1:
                return
            elif index == 2 or built:
                if index == 2:
                    await console.expect(BUILD_PROMPT, timeout=60)
                await self._restart_artifact_server(console)
                return
            else:
                output = await console.run(
                    "tail -n 20 /build/*.log", prompt=BUILD_PROMPT, timeout=60
                )
                LOGGER.error("Build log tail:\n%s", output)
                raise RuntimeError("The build inside the FreeBSD VM failed")

    async def _restart_artifact_server(self, console: SerialConsole) -> None:
        LOGGER.warning("The artifact server in the VM did not start, retrying")
        port = VM_ARTIFACT_PORT
        try:
            await console.run_checked(
                "cd /build/artifacts; "
                f"(nohup python3 -m http.server {port} --bind 0.0.0.0 "
                "> /tmp/artifact-server.log 2>&1 &); "
                f"sleep 3; sockstat -l -p {port} | grep -q ':{port}'",
                "ARTIFACT_SERVER_OK",
                prompt=BUILD_PROMPT,
                timeout=120,
            )
        except RuntimeError as exc:
            raise RuntimeError(
                "The build inside the FreeBSD VM finished, but its artifact "
                "server did not start"
            ) from exc

    async def _download_artifacts(
        self, vm_http_port: int, dest: pathlib.Path
    ) -> dict[ArtifactKind, pathlib.Path]:
        names = self.names
        files = {}
        for kind, name in (
            (ArtifactKind.DIST_TARBALL, names.dist_tarball),
            (ArtifactKind.PHAR, names.phar),
            (ArtifactKind.PHP_CLI, names.php_cli),
            (ArtifactKind.PHP_CGI, names.php_cgi),
            (ArtifactKind.PHP_FPM, names.php_fpm),
        ):
            files[kind] = await download_file(
                f"http://127.0.0.1:{vm_http_port}/{name}", dest / name
            )

        await asyncio.to_thread(
            _extract_tarball, files[ArtifactKind.DIST_TARBALL], dest
        )
        lib_dir = dest / names.dist_tarball.removesuffix(".tar.gz") / "lib"
        if await aiofiles.os.path.isdir(lib_dir):
            files[ArtifactKind.LIB_DIR] = lib_dir
        else:
            LOGGER.warning("The distribution archive contains no lib/ directory")
        return files

    async def build(self) -> BuildManifest:
        if platform.system() != "Darwin":
            raise RuntimeError("The FreeBSD build requires a macOS host with hvf")

        arch = host_qemu_arch(self.machine)
        require_tools(
            ["qemu-img", f"qemu-system-{arch}"],
            {"qemu-img": "brew install qemu", f"qemu-system-{arch}": "brew install qemu"},
        )
        firmware = find_edk2_firmware() if arch == "aarch64" else None
        resources = await HostResources.detect()
        php_version_full = await asyncio.to_thread(
            resolve_php_release, self.settings.php_version
        )

        async with self.work_dir("openemr-freebsd-build-") as work_dir:
            vm_dir = work_dir / "vm"
            shared_dir = work_dir / "shared"
            for directory in (vm_dir, shared_dir):
                await aiofiles.os.makedirs(directory, exist_ok=True)

            image = await prepare_vm_image(
                self.settings.freebsd_version, arch, vm_dir, VM_DISK_SIZE
            )
            await write_to_file(shared_dir / "env.sh", self.render_env(php_version_full))
            build_script = shared_dir / "freebsd-build.sh"
            await write_to_file(build_script, self.render_build_script())
            await make_executable(build_script)

            vm_http_port = find_free_port(8888)
            serial_port = find_free_port(4444)
            http_port = find_free_port(8000)

            qemu = QemuMachine(
                arch=arch,
                image=image,
                memory_gb=resources.vm_ram_gb,
                cpus=resources.logical_cpus,
                serial_port=serial_port,
                host_forwards={vm_http_port: VM_ARTIFACT_PORT},
                firmware=firmware,
                log_file=work_dir / "qemu.log",
            )

            async with FileServer(shared_dir, http_port):
                await qemu.start()
                try:
                    await wait_for_port("127.0.0.1", serial_port, timeout=60)
                    async with SerialConsole(
                        "127.0.0.1", serial_port, transcript=work_dir / "serial.log"
                    ) as console:
                        await self._run_build(console, http_port)

                    # the artifact server needs a moment after announcing itself
                    await asyncio.sleep(5)
                    files = await self._download_artifacts(
                        vm_http_port, work_dir / "dist"
                    )
                finally:
                    await qemu.stop()

            return await self.publish(files)
