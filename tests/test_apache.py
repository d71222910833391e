import os
import pathlib

import pytest
from conftest import FakeCommandResult
from conftest import FakeRunCommand
from conftest import make_file

from openemr_static import apache
from openemr_static.apache import ApacheFlavor
from openemr_static.apache import ApacheLayout
from openemr_static.apache import detect_apache_layout
from openemr_static.apache import enable_module
from openemr_static.apache import ensure_include
from openemr_static.apache import fpm_config_path
from openemr_static.apache import install_cgi_wrapper
from openemr_static.apache import php_env
from openemr_static.apache import render_vhost
from openemr_static.apache import run_fpm
from openemr_static.apache import setup_apache
from openemr_static.apache import write_fpm_config
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import LocatedArtifacts
from openemr_static.target import BuildTarget

_HTTPD_CONF = """ServerRoot "/opt/homebrew/opt/httpd"
LoadModule rewrite_module lib/httpd/modules/mod_rewrite.so
#LoadModule cgi_module lib/httpd/modules/mod_cgi.so
# LoadModule actions_module lib/httpd/modules/mod_actions.so
LoadModule headers_module lib/httpd/modules/mod_headers.so
"""


def _homebrew_layout(conf_dir: pathlib.Path) -> ApacheLayout:
    return ApacheLayout(
        flavor=ApacheFlavor.HOMEBREW,
        conf_dir=conf_dir,
        include_dir=conf_dir / "extra",
        log_dir=pathlib.Path("/opt/homebrew/var/log/httpd"),
        port=8080,
        module_dir="lib/httpd/modules",
        configtest="apachectl configtest",
        restart_hint="Restart Apache with: brew services restart httpd",
    )


@pytest.mark.parametrize(
    "module,module_file,action",
    [
        ("rewrite_module", "lib/httpd/modules/mod_rewrite.so", "already-enabled"),
        ("cgi_module", "lib/httpd/modules/mod_cgi.so", "enabled"),
        ("actions_module", "lib/httpd/modules/mod_actions.so", "enabled"),
        ("expires_module", "lib/httpd/modules/mod_expires.so", "added"),
    ],
)
def test_enable_module(module: str, module_file: str, action: str):
    text, res = enable_module(_HTTPD_CONF, module, module_file)

    assert res == action
    assert f"\nLoadModule {module} {module_file}\n" in text
    assert f"#LoadModule {module}" not in text
    assert f"# LoadModule {module}" not in text


def test_enable_module_is_idempotent():
    text, _ = enable_module(_HTTPD_CONF, "cgi_module", "lib/httpd/modules/mod_cgi.so")
    assert enable_module(text, "cgi_module", "lib/httpd/modules/mod_cgi.so") == (
        text,
        "already-enabled",
    )


def test_enable_module_on_freebsd_ignores_the_module_path():
    conf = "#LoadModule cgi_module /usr/local/libexec/apache24/mod_cgi.so\n"

    text, res = enable_module(
        conf, "cgi_module", "libexec/apache24/mod_cgi.so", match_name_only=True
    )
    assert res == "enabled"
    assert text == "LoadModule cgi_module /usr/local/libexec/apache24/mod_cgi.so\n"

    _, res = enable_module(conf, "cgi_module", "libexec/apache24/mod_cgi.so")
    assert res == "added"


def test_ensure_include():
    conf_file = pathlib.Path("/opt/homebrew/etc/httpd/extra/httpd-openemr.conf")

    text, changed = ensure_include("Listen 8080", conf_file, "OpenEMR Configuration")
    assert changed
    assert text == (
        "Listen 8080\n\n# OpenEMR Configuration\n"
        "Include /opt/homebrew/etc/httpd/extra/httpd-openemr.conf\n"
    )

    assert ensure_include(text, conf_file, "OpenEMR Configuration") == (text, False)
    assert not ensure_include(
        f'IncludeOptional "{conf_file}"\n', conf_file, "OpenEMR Configuration"
    )[1]


@pytest.mark.parametrize(
    "conf_dir,flavor,port,web_user",
    [
        ("opt/homebrew/etc/httpd", ApacheFlavor.HOMEBREW, 8080, None),
        ("usr/local/etc/httpd", ApacheFlavor.HOMEBREW, 8080, None),
        ("private/etc/apache2", ApacheFlavor.MACOS_SYSTEM, 8080, None),
        ("etc/apache2", ApacheFlavor.DEBIAN, 80, "www-data"),
        ("usr/local/etc/apache24", ApacheFlavor.FREEBSD, 80, "www"),
    ],
)
def test_detect_apache_layout(
    tmp_path: pathlib.Path,
    conf_dir: str,
    flavor: ApacheFlavor,
    port: int,
    web_user: str | None,
):
    (tmp_path / conf_dir).mkdir(parents=True)

    layout = detect_apache_layout(tmp_path)

    assert layout.flavor == flavor
    assert layout.conf_dir == tmp_path / conf_dir
    assert layout.port == port
    assert layout.web_user == web_user


def test_homebrew_on_apple_silicon_wins(tmp_path: pathlib.Path):
    (tmp_path / "opt/homebrew/etc/httpd").mkdir(parents=True)
    (tmp_path / "usr/local/etc/httpd").mkdir(parents=True)

    layout = detect_apache_layout(tmp_path)
    assert layout.conf_dir == tmp_path / "opt/homebrew/etc/httpd"
    assert layout.log_dir == pathlib.Path("/opt/homebrew/var/log/httpd")
    assert layout.module_file("cgi") == "lib/httpd/modules/mod_cgi.so"


def test_debian_layout(tmp_path: pathlib.Path):
    (tmp_path / "etc/apache2").mkdir(parents=True)

    layout = detect_apache_layout(tmp_path)

    assert layout.uses_debian_tools
    assert layout.conf_file("cgi") == tmp_path / "etc/apache2/sites-available/openemr.conf"
    assert (
        layout.conf_file("fpm")
        == tmp_path / "etc/apache2/sites-available/openemr-fpm.conf"
    )


def test_no_apache(tmp_path: pathlib.Path):
    with pytest.raises(RuntimeError, match="No Apache installation found"):
        detect_apache_layout(tmp_path)


def test_render_vhost(tmp_path: pathlib.Path):
    layout = _homebrew_layout(tmp_path)
    openemr_path = pathlib.Path("/srv/mac_os/openemr-extracted")

    cgi = render_vhost("cgi", openemr_path, layout)
    assert "Define OPENEMR_PATH /srv/mac_os/openemr-extracted\n" in cgi
    assert "<VirtualHost *:8080>" in cgi
    assert "Action application/x-httpd-php /cgi-bin/php-wrapper.cgi" in cgi
    assert "proxy:fcgi" not in cgi
    assert 'ErrorLog "/opt/homebrew/var/log/httpd/openemr_error.log"' in cgi

    fpm = render_vhost("fpm", openemr_path, layout, fcgi_address="127.0.0.1:9001")
    assert 'SetHandler "proxy:fcgi://127.0.0.1:9001"' in fpm
    assert "php-wrapper.cgi" not in fpm
    assert 'CustomLog "/opt/homebrew/var/log/httpd/openemr_fpm_access.log" common' in fpm


@pytest.mark.asyncio
async def test_install_cgi_wrapper(tmp_path: pathlib.Path):
    php_cgi = make_file(tmp_path / "php-cgi-v7_0_4-macos-arm64", "", True)

    wrapper = await install_cgi_wrapper(tmp_path / "openemr-extracted", php_cgi, "macos")

    assert wrapper == tmp_path / "openemr-extracted" / "cgi-bin" / "php-wrapper.cgi"
    assert os.access(wrapper, os.X_OK)
    assert f'PHP_CGI_BINARY="{php_cgi}"' in wrapper.read_text()


@pytest.fixture
def project_root(tmp_path: pathlib.Path) -> pathlib.Path:
    root = tmp_path / "project"
    platform_dir = root / "mac_os"
    make_file(platform_dir / "openemr-extracted" / "interface" / "main" / "main.php")
    make_file(platform_dir / "php-cgi-v7_0_4-macos-arm64", "", True)
    make_file(platform_dir / "php-fpm-v7_0_4-macos-arm64", "", True)
    return root


@pytest.fixture
def homebrew(tmp_path: pathlib.Path) -> ApacheLayout:
    layout = _homebrew_layout(tmp_path / "httpd")
    make_file(layout.httpd_conf, _HTTPD_CONF)
    return layout


@pytest.mark.asyncio
async def test_setup_apache_cgi(
    project_root: pathlib.Path,
    homebrew: ApacheLayout,
    monkeypatch: pytest.MonkeyPatch,
):
    fake = FakeRunCommand()
    monkeypatch.setattr(apache, "run_cmd", fake)

    msg = await setup_apache(project_root, BuildTarget.MACOS, "cgi", homebrew)

    vhost = homebrew.include_dir / "httpd-openemr.conf"
    openemr_path = (project_root / "mac_os" / "openemr-extracted").absolute()
    assert f"Define OPENEMR_PATH {openemr_path}" in vhost.read_text()

    wrapper = openemr_path / "cgi-bin" / "php-wrapper.cgi"
    assert os.access(wrapper, os.X_OK)

    httpd_conf = homebrew.httpd_conf.read_text()
    assert "\nLoadModule cgi_module lib/httpd/modules/mod_cgi.so\n" in httpd_conf
    assert "\nLoadModule expires_module lib/httpd/modules/mod_expires.so\n" in httpd_conf
    assert httpd_conf.endswith(f"# OpenEMR Configuration\nInclude {vhost}\n")

    assert fake.commands == ["apachectl configtest"]
    assert "brew services restart httpd" in msg
    assert "http://localhost:8080/" in msg


@pytest.mark.asyncio
async def test_setup_apache_twice_does_not_duplicate(
    project_root: pathlib.Path,
    homebrew: ApacheLayout,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setattr(apache, "run_cmd", FakeRunCommand())

    await setup_apache(project_root, BuildTarget.MACOS, "cgi", homebrew)
    first = homebrew.httpd_conf.read_text()
    await setup_apache(project_root, BuildTarget.MACOS, "cgi", homebrew)

    assert homebrew.httpd_conf.read_text() == first
    assert first.count("Include ") == 1


@pytest.mark.asyncio
async def test_setup_apache_fpm(
    project_root: pathlib.Path,
    homebrew: ApacheLayout,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setattr(apache, "run_cmd", FakeRunCommand())

    await setup_apache(project_root, BuildTarget.MACOS, "fpm", homebrew)

    assert (homebrew.include_dir / "httpd-openemr-fpm.conf").is_file()
    assert fpm_config_path(project_root / "mac_os").is_file()
    httpd_conf = homebrew.httpd_conf.read_text()
    assert "LoadModule proxy_fcgi_module lib/httpd/modules/mod_proxy_fcgi.so" in httpd_conf
    assert "#LoadModule cgi_module lib/httpd/modules/mod_cgi.so\n" in httpd_conf


@pytest.mark.asyncio
async def test_setup_apache_configtest_failure(
    project_root: pathlib.Path,
    homebrew: ApacheLayout,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setattr(
        apache,
        "run_cmd",
        FakeRunCommand(
            {"apachectl": FakeCommandResult(exit_code=1, stderr="Syntax error on line 3")}
        ),
    )

    with pytest.raises(RuntimeError, match="Syntax error on line 3"):
        await setup_apache(project_root, BuildTarget.MACOS, "cgi", homebrew)


@pytest.mark.asyncio
async def test_setup_apache_requires_the_extracted_tree(
    tmp_path: pathlib.Path, homebrew: ApacheLayout
):
    with pytest.raises(RuntimeError, match="openemr-static extract-openemr macos"):
        await setup_apache(tmp_path / "empty", BuildTarget.MACOS, "cgi", homebrew)


@pytest.mark.asyncio
async def test_write_fpm_config(tmp_path: pathlib.Path):
    conf = await write_fpm_config(tmp_path / "freebsd", user="www")

    assert conf == tmp_path / "freebsd" / "apache_fpm" / "php-fpm.conf"
    text = conf.read_text()
    assert f"error_log = {conf.parent / 'php-fpm.log'}\n" in text
    assert "user = www\n" in text


@pytest.mark.asyncio
async def test_run_fpm(project_root: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    fake = FakeRunCommand()
    monkeypatch.setattr(apache, "run_cmd", fake)

    with pytest.raises(RuntimeError, match="setup-apache macos fpm"):
        await run_fpm(project_root, BuildTarget.MACOS)

    conf = await write_fpm_config(project_root / "mac_os")
    msg = await run_fpm(project_root, BuildTarget.MACOS)

    php_fpm = project_root / "mac_os" / "php-fpm-v7_0_4-macos-arm64"
    assert fake.commands[0].startswith(f"{php_fpm} -y {conf}")
    assert "127.0.0.1:9000" in msg


def test_php_env():
    assert php_env(LocatedArtifacts(target=BuildTarget.MACOS)) == {}

    lib_dir = pathlib.Path("/srv/freebsd/dist/openemr-v7_0_4-freebsd-amd64/lib")
    located = LocatedArtifacts(
        target=BuildTarget.FREEBSD, paths={ArtifactKind.LIB_DIR: lib_dir}
    )
    assert php_env(located) == {"LD_LIBRARY_PATH": str(lib_dir)}
