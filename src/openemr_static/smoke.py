"""Checks of the Apache setups and a thin wrapper around ``ab``."""

import os
import pathlib
import re
import shutil
from dataclasses import dataclass
from dataclasses import field

import aiofiles.os
from obs_package_update.util import RunCommand

from openemr_static.apache import DEFAULT_FCGI_ADDRESS
from openemr_static.apache import extracted_dir
from openemr_static.apache import fpm_config_path
from openemr_static.apache import php_env
from openemr_static.logger import LOGGER
from openemr_static.manifest import ArtifactKind
from openemr_static.manifest import locate_target_artifacts
from openemr_static.server import count_files
from openemr_static.source import PHAR_STUB
from openemr_static.target import BuildTarget
from openemr_static.util import ensure_absent
from openemr_static.util import is_executable
from openemr_static.util import is_port_in_use
from openemr_static.util import require_tools
from openemr_static.util import write_to_file

run_cmd = RunCommand(logger=LOGGER)

ENTRY_POINT = PHAR_STUB

#: printed by :py:const:`SAMPLE_PHP`
SAMPLE_MARKER = "OPENEMR_STATIC_SMOKE_TEST_OK"

SAMPLE_PHP = f"""<?php
echo "{SAMPLE_MARKER}\\n";
echo "PHP Version: " . PHP_VERSION . "\\n";
"""

SAMPLE_NAME = "openemr-static-smoke-test.php"

_X_POWERED_BY = re.compile(r"^X-Powered-By:\s*PHP", re.MULTILINE | re.IGNORECASE)


@dataclass
class SmokeReport:
    """Outcome of a smoke test. Hard failures are raised as
    :py:class:`RuntimeError` instead of being recorded.

    """

    title: str
    passed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def ok(self, message: str) -> None:
        LOGGER.info(message)
        self.passed.append(message)

    def warn(self, message: str) -> None:
        LOGGER.warning(message)
        self.warnings.append(message)

    def __str__(self) -> str:
        return "\n".join(
            [self.title]
            + [f"  OK: {msg}" for msg in self.passed]
            + [f"  WARNING: {msg}" for msg in self.warnings]
        )


async def check_binary(path: pathlib.Path) -> str:
    """Returns the first line that ``path --version`` prints.

    Raises:
        :py:class:`RuntimeError`: if ``path`` is missing or not executable

    """
    if not await aiofiles.os.path.isfile(path) or not is_executable(path):
        raise RuntimeError(f"{path} does not exist or is not executable")
    res = await run_cmd(f"{path} --version")
    return res.stdout.strip().splitlines()[0] if res.stdout.strip() else ""


def check_extraction(openemr_path: pathlib.Path) -> tuple[int, bool]:
    """Returns the number of files below ``openemr_path`` and whether the
    OpenEMR entry point exists.

    Raises:
        :py:class:`RuntimeError`: if nothing was extracted to ``openemr_path``

    """
    if not openemr_path.is_dir() or not (files := count_files(openemr_path)):
        raise RuntimeError(
            f"OpenEMR is not extracted to {openemr_path}, "
            "run: openemr-static extract-openemr <target>"
        )
    return files, (openemr_path / ENTRY_POINT).is_file()


def _report_extraction(report: SmokeReport, openemr_path: pathlib.Path) -> None:
    files, has_entry_point = check_extraction(openemr_path)
    report.ok(f"OpenEMR is extracted to {openemr_path} ({files} files)")
    if has_entry_point:
        report.ok(f"Found the entry point {ENTRY_POINT}")
    else:
        report.warn(f"{ENTRY_POINT} not found, the OpenEMR version may differ")


async def test_cgi_setup(project_root: pathlib.Path, target: BuildTarget) -> SmokeReport:
    """Executes a sample script through the CGI wrapper that
    :py:func:`~openemr_static.apache.setup_apache` installed.

    Raises:
        :py:class:`RuntimeError`: if php-cgi, the wrapper or the extracted
            tree is missing or the sample script does not run

    """
    report = SmokeReport(f"Apache CGI setup of {target}")
    located = await locate_target_artifacts(project_root, target)
    php_cgi = located.require(ArtifactKind.PHP_CGI)
    report.ok(f"php-cgi: {await check_binary(php_cgi)}")

    openemr_path = extracted_dir(project_root, target)
    wrapper = openemr_path / "cgi-bin" / "php-wrapper.cgi"
    if not wrapper.is_file() or not is_executable(wrapper):
        raise RuntimeError(
            f"{wrapper} does not exist or is not executable, "
            f"run: openemr-static setup-apache {target} cgi"
        )
    report.ok(f"The wrapper {wrapper} is executable")

    sample = openemr_path / SAMPLE_NAME
    await write_to_file(sample, SAMPLE_PHP)
    try:
        res = await run_cmd(
            str(wrapper),
            env={
                **os.environ,
                "SCRIPT_FILENAME": str(sample),
                "DOCUMENT_ROOT": str(openemr_path),
                "REQUEST_METHOD": "GET",
                "PHP_CGI_BINARY": str(php_cgi),
                **php_env(located),
            },
            raise_on_error=False,
        )
    finally:
        await ensure_absent(sample)

    if not _X_POWERED_BY.search(res.stdout) or SAMPLE_MARKER not in res.stdout:
        raise RuntimeError(
            f"The wrapper did not execute PHP, output:\n{res.stdout}{res.stderr}"
        )
    report.ok("The wrapper executes PHP")

    _report_extraction(report, openemr_path)
    return report


async def test_fpm_setup(project_root: pathlib.Path, target: BuildTarget) -> SmokeReport:
    """Validates the php-fpm configuration and, if php-fpm runs and
    ``cgi-fcgi`` is installed, executes a sample script through FastCGI.

    Raises:
        :py:class:`RuntimeError`: if php-fpm, its configuration or the
            extracted tree is missing or broken

    """
    report = SmokeReport(f"Apache php-fpm setup of {target}")
    located = await locate_target_artifacts(project_root, target)
    php_fpm = located.require(ArtifactKind.PHP_FPM)
    report.ok(f"php-fpm: {await check_binary(php_fpm)}")
    env = php_env(located)

    conf = fpm_config_path(project_root / target.platform_dir)
    if not conf.is_file():
        raise RuntimeError(
            f"{conf} does not exist, run: openemr-static setup-apache {target} fpm"
        )
    res = await run_cmd(
        f"{php_fpm} -t -y {conf}", env={**os.environ, **env}, raise_on_error=False
    )
    if "test is successful" not in res.stdout + res.stderr:
        raise RuntimeError(
            f"The php-fpm configuration {conf} is invalid:\n{res.stderr or res.stdout}"
        )
    report.ok(f"The php-fpm configuration {conf} is valid")

    host, port = DEFAULT_FCGI_ADDRESS.split(":")
    openemr_path = extracted_dir(project_root, target)
    if not (listening := is_port_in_use(int(port), host)):
        report.warn(
            f"php-fpm is not listening on {DEFAULT_FCGI_ADDRESS}, "
            f"start it with: openemr-static run-fpm {target}"
        )
    elif not shutil.which("cgi-fcgi"):
        report.ok(f"Something listens on {DEFAULT_FCGI_ADDRESS}")
        report.warn("cgi-fcgi is not installed, skipping the FastCGI request")

    if listening and shutil.which("cgi-fcgi") and openemr_path.is_dir():
        sample = openemr_path / SAMPLE_NAME
        await write_to_file(sample, SAMPLE_PHP)
        try:
            res = await run_cmd(
                f"cgi-fcgi -bind -connect {DEFAULT_FCGI_ADDRESS}",
                env={
                    **os.environ,
                    "SCRIPT_FILENAME": str(sample),
                    "DOCUMENT_ROOT": str(openemr_path),
                    "REQUEST_METHOD": "GET",
                },
                raise_on_error=False,
            )
        finally:
            await ensure_absent(sample)
        if SAMPLE_MARKER not in res.stdout:
            raise RuntimeError(
                f"php-fpm did not execute the sample script, output:\n{res.stdout}"
            )
        report.ok(f"php-fpm on {DEFAULT_FCGI_ADDRESS} executes PHP")

    _report_extraction(report, openemr_path)
    return report


async def run_benchmark(
    url: str = "http://localhost:8080/", concurrency: int = 10, requests: int = 100
) -> str:
    """Runs ApacheBench against ``url`` and returns its report."""
    if concurrency < 1 or requests < 1:
        raise ValueError(
            f"Concurrency ({concurrency}) and requests ({requests}) must be positive"
        )
    require_tools(
        ["ab"], {"ab": "brew install httpd (macOS) or apt install apache2-utils"}
    )
    res = await run_cmd(f"ab -c {concurrency} -n {requests} {url}")
    return res.stdout
