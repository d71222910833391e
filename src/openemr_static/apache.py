"""Configuration of an Apache installation on the host to serve the extracted
OpenEMR tree, either through the static php-cgi binary (``cgi``) or by
proxying to the static php-fpm (``fpm``).

"""

import asyncio
import enum
import os
import pathlib
import re
from dataclasses import dataclass
from typing import Literal

import aiofiles
import aiofiles.os
from obs_package_update.util import RunCommand

from openemr_static.logger import LOGGER
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import LocatedArtifacts
from openemr_static.manifest import locate_target_artifacts
from openemr_static.server import extract_phar
from openemr_static.source import PHAR_STUB
from openemr_static.target import BuildTarget
from openemr_static.templates import APACHE_VHOST
from openemr_static.templates import PHP_CGI_WRAPPER
from openemr_static.templates import PHP_FPM_CONF
from openemr_static.util import ensure_absent
from openemr_static.util import make_executable
from openemr_static.util import write_to_file

run_cmd = RunCommand(logger=LOGGER)

_VARIANT_T = Literal["cgi", "fpm"]

#: address on which php-fpm listens and Apache proxies to
DEFAULT_FCGI_ADDRESS = "127.0.0.1:9000"

DEFAULT_FPM_PID_FILE = "/tmp/php-fpm.pid"

#: name of the directory below the platform directory that Apache serves
EXTRACTED_DIR_NAME = "openemr-extracted"

MODULES: dict[str, tuple[str, ...]] = {
    "cgi": ("rewrite", "actions", "cgi", "deflate", "headers", "expires"),
    "fpm": ("rewrite", "proxy", "proxy_fcgi", "deflate", "headers", "expires"),
}

#: directories that OpenEMR writes to at runtime
WRITABLE_DIRS = (
    "sites/default/documents",
    "sites/default/edi",
    "sites/default/era",
    "sites/default/letter_templates",
    "gdata",
)

SQLCONF = "sites/default/sqlconf.php"

#: placeholder page of FreeBSD's apache24 package
_FREEBSD_DEFAULT_DOCROOT = "/usr/local/www/apache24/data"


@enum.unique
class ApacheFlavor(enum.Enum):
    HOMEBREW = "homebrew"
    MACOS_SYSTEM = "macos-system"
    DEBIAN = "debian"
    FREEBSD = "freebsd"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ApacheLayout:
    flavor: ApacheFlavor

    #: directory containing ``httpd.conf`` (``apache2.conf`` on Debian)
    conf_dir: pathlib.Path

    #: directory receiving the OpenEMR virtual host
    include_dir: pathlib.Path

    log_dir: pathlib.Path
    port: int

    #: path of the modules relative to the server root
    module_dir: str

    configtest: str
    restart_hint: str

    #: owner of the writable OpenEMR directories, ``None`` leaves the
    #: permissions alone
    web_user: str | None = None

    @property
    def httpd_conf(self) -> pathlib.Path:
        return self.conf_dir / "httpd.conf"

    @property
    def uses_debian_tools(self) -> bool:
        """Modules and sites are enabled with ``a2enmod`` and ``a2ensite``."""
        return self.flavor == ApacheFlavor.DEBIAN

    @property
    def includes_automatically(self) -> bool:
        """FreeBSD's httpd.conf includes every file in ``Includes/``."""
        return self.flavor == ApacheFlavor.FREEBSD

    def conf_file(self, variant: _VARIANT_T) -> pathlib.Path:
        if self.uses_debian_tools:
            name = "openemr.conf" if variant == "cgi" else "openemr-fpm.conf"
        else:
            name = "httpd-openemr.conf" if variant == "cgi" else "httpd-openemr-fpm.conf"
        return self.include_dir / name

    def module_file(self, module: str) -> str:
        return f"{self.module_dir}/mod_{module}.so"


def detect_apache_layout(root: pathlib.Path = pathlib.Path("/")) -> ApacheLayout:
    """Finds the Apache installation of the host, probing Homebrew on Apple
    Silicon and Intel, the macOS system Apache, Debian's apache2 and
    FreeBSD's apache24 in that order.

    Raises:
        :py:class:`RuntimeError`: if no installation was found

    """
    for prefix in ("opt/homebrew", "usr/local"):
        if (conf_dir := root / prefix / "etc" / "httpd").is_dir():
            return ApacheLayout(
                flavor=ApacheFlavor.HOMEBREW,
                conf_dir=conf_dir,
                include_dir=conf_dir / "extra",
                log_dir=pathlib.Path("/") / prefix / "var" / "log" / "httpd",
                port=8080,
                module_dir="lib/httpd/modules",
                configtest="apachectl configtest",
                restart_hint="Restart Apache with: brew services restart httpd",
            )

    if (conf_dir := root / "private" / "etc" / "apache2").is_dir():
        return ApacheLayout(
            flavor=ApacheFlavor.MACOS_SYSTEM,
            conf_dir=conf_dir,
            include_dir=conf_dir / "extra",
            log_dir=pathlib.Path("/var/log/apache2"),
            port=8080,
            module_dir="libexec/apache2",
            configtest="apachectl configtest",
            restart_hint="Restart Apache with: sudo apachectl restart",
        )

    if (conf_dir := root / "etc" / "apache2").is_dir():
        return ApacheLayout(
            flavor=ApacheFlavor.DEBIAN,
            conf_dir=conf_dir,
            include_dir=conf_dir / "sites-available",
            log_dir=pathlib.Path("/var/log/apache2"),
            port=80,
            module_dir="/usr/lib/apache2/modules",
            configtest="apache2ctl configtest",
            restart_hint="Restart Apache with: sudo systemctl restart apache2",
            web_user="www-data",
        )

    if (conf_dir := root / "usr" / "local" / "etc" / "apache24").is_dir():
        return ApacheLayout(
            flavor=ApacheFlavor.FREEBSD,
            conf_dir=conf_dir,
            include_dir=conf_dir / "Includes",
            log_dir=pathlib.Path("/var/log"),
            port=80,
            module_dir="libexec/apache24",
            configtest="apachectl configtest",
            restart_hint="Restart Apache with: service apache24 restart",
            web_user="www",
        )

    raise RuntimeError(
        "No Apache installation found, install it first "
        "(macOS: brew install httpd, Debian/Ubuntu: apt install apache2, "
        "FreeBSD: pkg install apache24)"
    )


def render_vhost(
    variant: _VARIANT_T,
    openemr_path: pathlib.Path,
    layout: ApacheLayout,
    fcgi_address: str = DEFAULT_FCGI_ADDRESS,
) -> str:
    return APACHE_VHOST.render(
        variant=variant,
        fcgi_address=fcgi_address,
        openemr_path=openemr_path,
        port=layout.port,
        log_dir=layout.log_dir,
        log_prefix="openemr" if variant == "cgi" else "openemr_fpm",
    )


def enable_module(
    httpd_conf: str,
    module_name: str,
    module_file: str,
    match_name_only: bool = False,
) -> tuple[str, Literal["already-enabled", "enabled", "added"]]:
    """Enables the ``LoadModule`` line of ``module_name`` in the contents of
    an httpd.conf.

    A commented out line is uncommented, a missing line is appended. With
    ``match_name_only`` the module file of an existing line is not compared
    (FreeBSD ships absolute and relative variants).

    """
    name = re.escape(module_name)
    file_re = r"\S+" if match_name_only else re.escape(module_file)

    if re.search(
        rf"^[ \t]*LoadModule[ \t]+{name}[ \t]+{file_re}[ \t]*$",
        httpd_conf,
        re.MULTILINE,
    ):
        return httpd_conf, "already-enabled"

    commented = re.compile(
        rf"^[ \t]*#[ \t]*(LoadModule[ \t]+{name}[ \t]+{file_re})[ \t]*$", re.MULTILINE
    )
    if commented.search(httpd_conf):
        return commented.sub(r"\1", httpd_conf, count=1), "enabled"

    if httpd_conf and not httpd_conf.endswith("\n"):
        httpd_conf += "\n"
    return httpd_conf + f"LoadModule {module_name} {module_file}\n", "added"


def ensure_include(
    httpd_conf: str, conf_file: pathlib.Path, label: str
) -> tuple[str, bool]:
    """Appends an ``Include`` of ``conf_file`` preceded by the comment
    ``label`` unless httpd.conf already includes it. Returns the new contents
    and whether they changed.

    """
    if re.search(
        rf"^[ \t]*Include(Optional)?[ \t]+\"?{re.escape(str(conf_file))}\"?[ \t]*$",
        httpd_conf,
        re.MULTILINE,
    ):
        return httpd_conf, False

    if httpd_conf and not httpd_conf.endswith("\n"):
        httpd_conf += "\n"
    return httpd_conf + f"\n# {label}\nInclude {conf_file}\n", True


async def install_cgi_wrapper(
    openemr_path: pathlib.Path, php_cgi: pathlib.Path | None, os_name: str
) -> pathlib.Path:
    cgi_bin = openemr_path / "cgi-bin"
    await aiofiles.os.makedirs(cgi_bin, exist_ok=True)
    wrapper = cgi_bin / "php-wrapper.cgi"
    await write_to_file(
        wrapper,
        PHP_CGI_WRAPPER.render(
            php_cgi_binary=php_cgi.absolute() if php_cgi else "", os_name=os_name
        )
        + "\n",
    )
    await make_executable(wrapper)
    LOGGER.info("Installed the CGI wrapper %s", wrapper)
    return wrapper


async def prepare_writable_dirs(openemr_path: pathlib.Path, web_user: str) -> None:
    """Creates the directories and the database configuration OpenEMR writes
    to and hands the tree over to ``web_user``.

    """
    for directory in WRITABLE_DIRS:
        await aiofiles.os.makedirs(openemr_path / directory, exist_ok=True)
    sqlconf = openemr_path / SQLCONF
    if not await aiofiles.os.path.exists(sqlconf):
        await write_to_file(sqlconf, "")

    await run_cmd(f"chown -R {web_user}:{web_user} {openemr_path}")
    await asyncio.to_thread(os.chmod, sqlconf, 0o666)
    for directory in WRITABLE_DIRS:
        await asyncio.to_thread(os.chmod, openemr_path / directory, 0o777)


async def _edit_file(path: pathlib.Path, edit) -> None:
    async with aiofiles.open(path, "r") as conf:
        old = await conf.read()
    if (new := edit(old)) != old:
        await write_to_file(path, new)


def _freebsd_defaults(httpd_conf: str, openemr_path: pathlib.Path) -> str:
    httpd_conf = httpd_conf.replace(
        f'"{_FREEBSD_DEFAULT_DOCROOT}"', f'"{openemr_path}"'
    )
    if not re.search(r"^ServerName\s", httpd_conf, re.MULTILINE):
        httpd_conf += "ServerName 127.0.0.1:80\n"
    return httpd_conf


def extracted_dir(project_root: pathlib.Path, target: BuildTarget) -> pathlib.Path:
    return project_root / target.platform_dir / EXTRACTED_DIR_NAME


def php_env(located: LocatedArtifacts) -> dict[str, str]:
    """Environment for running the PHP binaries of ``located``."""
    if lib_dir := located.get(ArtifactKind.LIB_DIR):
        return {"LD_LIBRARY_PATH": str(lib_dir)}
    return {}


async def extract_openemr(
    project_root: pathlib.Path,
    target: BuildTarget,
    output_dir: pathlib.Path | None = None,
) -> str:
    """Extracts the PHAR of ``target`` into the directory served by Apache.

    Raises:
        :py:class:`RuntimeError`: if the extracted tree has no OpenEMR entry
            point

    """
    located = await locate_target_artifacts(project_root, target)
    dest = output_dir or extracted_dir(project_root, target)
    files = await extract_phar(
        located.require(ArtifactKind.PHP_CLI),
        located.require(ArtifactKind.PHAR),
        dest,
        located.get(ArtifactKind.PHP_INI),
        env=php_env(located),
    )
    if not (dest / PHAR_STUB).is_file():
        raise RuntimeError(f"{PHAR_STUB} is missing in the extracted tree {dest}")
    return f"Extracted {files} files to {dest}"


async def setup_apache(
    project_root: pathlib.Path,
    target: BuildTarget,
    variant: _VARIANT_T,
    layout: ApacheLayout | None = None,
) -> str:
    """Configures Apache to serve the extracted OpenEMR tree of ``target``
    and returns a summary.

    Raises:
        :py:class:`RuntimeError`: if the tree was not extracted or the
            configuration test fails

    """
    openemr_path = extracted_dir(project_root, target)
    if not await aiofiles.os.path.isdir(openemr_path):
        raise RuntimeError(
            f"{openemr_path} does not exist, run first: "
            f"openemr-static extract-openemr {target}"
        )

    located = await locate_target_artifacts(project_root, target)
    kind = ArtifactKind.PHP_CGI if variant == "cgi" else ArtifactKind.PHP_FPM
    if (php_binary := located.get(kind)) is None:
        LOGGER.warning(
            "No %s binary found, Apache will not be able to execute PHP until "
            "it is built",
            kind.replace("_", "-"),
        )

    layout = layout or detect_apache_layout()
    LOGGER.info("Configuring the %s Apache in %s", layout.flavor, layout.conf_dir)

    conf_file = layout.conf_file(variant)
    await aiofiles.os.makedirs(conf_file.parent, exist_ok=True)
    await write_to_file(conf_file, render_vhost(variant, openemr_path.absolute(), layout))

    if variant == "cgi":
        await install_cgi_wrapper(openemr_path, php_binary, target.os_name)
    else:
        await write_fpm_config(
            project_root / target.platform_dir,
            user=layout.web_user if os.geteuid() == 0 else None,
        )

    if layout.uses_debian_tools:
        await run_cmd(f"a2enmod {' '.join(MODULES[variant])}")
        await run_cmd(f"a2ensite {conf_file.stem}")
    else:

        def _edit_httpd_conf(text: str) -> str:
            for module in MODULES[variant]:
                text, action = enable_module(
                    text,
                    f"{module}_module",
                    layout.module_file(module),
                    match_name_only=layout.flavor == ApacheFlavor.FREEBSD,
                )
                LOGGER.info("mod_%s: %s", module, action)
            if not layout.includes_automatically:
                text, _ = ensure_include(text, conf_file, "OpenEMR Configuration")
            if layout.flavor == ApacheFlavor.FREEBSD:
                text = _freebsd_defaults(text, openemr_path.absolute())
            return text

        await _edit_file(layout.httpd_conf, _edit_httpd_conf)

    if layout.flavor == ApacheFlavor.FREEBSD:
        await ensure_absent(pathlib.Path(_FREEBSD_DEFAULT_DOCROOT) / "index.html")

    if layout.web_user:
        await prepare_writable_dirs(openemr_path, layout.web_user)

    res = await run_cmd(layout.configtest, raise_on_error=False)
    if res.exit_code != 0:
        raise RuntimeError(
            f"Apache configuration test failed:\n{res.stderr.strip() or res.stdout.strip()}"
        )

    return (
        f"Apache is configured for OpenEMR ({variant}) in {conf_file}.\n"
        f"{layout.restart_hint}\n"
        f"OpenEMR will be served on http://localhost:{layout.port}/"
    )


def render_fpm_pool(
    pid_file: str = DEFAULT_FPM_PID_FILE,
    error_log: str | pathlib.Path = "/tmp/php-fpm.log",
    listen: str = DEFAULT_FCGI_ADDRESS,
    daemonize: bool = True,
    user: str | None = None,
    group: str | None = None,
    max_children: int = 10,
) -> str:
    return PHP_FPM_CONF.render(
        pid_file=pid_file,
        error_log=error_log,
        daemonize=daemonize,
        user=user,
        group=group,
        listen=listen,
        max_children=max_children,
    )


def fpm_config_path(platform_dir: pathlib.Path) -> pathlib.Path:
    return platform_dir / "apache_fpm" / "php-fpm.conf"


async def write_fpm_config(
    platform_dir: pathlib.Path, user: str | None = None
) -> pathlib.Path:
    conf = fpm_config_path(platform_dir)
    await aiofiles.os.makedirs(conf.parent, exist_ok=True)
    await write_to_file(
        conf, render_fpm_pool(error_log=conf.parent / "php-fpm.log", user=user) + "\n"
    )
    LOGGER.info("Wrote the php-fpm configuration %s", conf)
    return conf


async def run_fpm(project_root: pathlib.Path, target: BuildTarget) -> str:
    """Starts the static php-fpm with the pool configuration written by
    :py:func:`setup_apache`.

    Raises:
        :py:class:`RuntimeError`: if php-fpm or its configuration is missing

    """
    located = await locate_target_artifacts(project_root, target)
    php_fpm = located.require(ArtifactKind.PHP_FPM)
    conf = fpm_config_path(project_root / target.platform_dir)
    if not await aiofiles.os.path.isfile(conf):
        raise RuntimeError(
            f"{conf} does not exist, run first: openemr-static setup-apache {target} fpm"
        )

    cmd = f"{php_fpm} -y {conf}"
    if php_ini := located.get(ArtifactKind.PHP_INI):
        cmd += f" -c {php_ini}"
    if os.geteuid() == 0:
        cmd += " -R"

    await run_cmd(cmd, env={**os.environ, **php_env(located)})
    return f"php-fpm is listening on {DEFAULT_FCGI_ADDRESS} (pid file {DEFAULT_FPM_PID_FILE})"
