import asyncio
import os
import pathlib
from collections.abc import Coroutine
from typing import Any
from typing import Literal

from openemr_static.data import DEFAULT_FREEBSD_VERSION
from openemr_static.data import DOCKER_BASE_IMAGE_ENVVAR_NAME
from openemr_static.data import FREEBSD_VERSION_ENVVAR_NAME
from openemr_static.data import PROJECT_ROOT_ENVVAR_NAME
from openemr_static.data import BuildSettings
from openemr_static.data import parse_extensions
from openemr_static.logger import LOGGER
from openemr_static.target import BuildTarget

ACTION_T = Literal[
    "build",
    "run-web-server",
    "run-freebsd-vm",
    "extract-openemr",
    "setup-apache",
    "run-fpm",
    "test-cgi",
    "test-fpm",
    "benchmark",
    "manifest",
]


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        "openemr-static",
        description="Build OpenEMR as static PHP binaries and run them",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Set the verbosity of the logger to stderr",
    )
    parser.add_argument(
        "--project-root",
        type=pathlib.Path,
        default=pathlib.Path(os.getenv(PROJECT_ROOT_ENVVAR_NAME) or os.getcwd()),
        help="Directory containing the platform directories (mac_os/, linux_amd64/, ...). "
        f"Defaults to ${PROJECT_ROOT_ENVVAR_NAME} or the current working directory.",
    )

    def add_target_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "target",
            type=BuildTarget.parse,
            help="One of " + ", ".join(str(t) for t in BuildTarget),
        )

    subparsers = parser.add_subparsers(dest="action")

    build_parser = subparsers.add_parser(
        "build", help="Build the static binaries and the PHAR of a target"
    )
    add_target_arg(build_parser)
    build_parser.add_argument(
        "openemr_version",
        nargs="?",
        default=None,
        help="The OpenEMR git tag to build (default: $OPENEMR_VERSION or v7_0_4)",
    )
    build_parser.add_argument("--php-version", type=str, default=None)
    build_parser.add_argument(
        "--freebsd-version",
        type=str,
        default=None,
        help=f"FreeBSD release of the build VM (default: ${FREEBSD_VERSION_ENVVAR_NAME})",
    )
    build_parser.add_argument(
        "--extensions",
        type=parse_extensions,
        default=None,
        help="Comma separated list of PHP extensions (macOS and Linux, the "
        "FreeBSD build always compiles its fixed set of extensions)",
    )
    build_parser.add_argument("--spc-release-tag", type=str, default=None)
    build_parser.add_argument(
        "--docker-base-image",
        type=str,
        default=None,
        help=f"Base image of the Linux builds (default: ${DOCKER_BASE_IMAGE_ENVVAR_NAME})",
    )
    build_parser.add_argument(
        "--debug",
        action="store_true",
        help="Keep the build directory for inspection",
    )

    web_parser = subparsers.add_parser(
        "run-web-server",
        help="Serve OpenEMR with PHP's built-in web server (macOS natively, "
        "Linux in docker, FreeBSD in a VM)",
    )
    add_target_arg(web_parser)
    web_parser.add_argument("--port", "-p", type=int, default=8080)

    vm_parser = subparsers.add_parser(
        "run-freebsd-vm",
        help="Boot a FreeBSD VM and serve the FreeBSD build of OpenEMR from it",
    )
    vm_parser.add_argument("--port", "-p", type=int, default=8080)
    vm_parser.add_argument(
        "--version",
        "-v",
        type=str,
        default=os.getenv(FREEBSD_VERSION_ENVVAR_NAME) or DEFAULT_FREEBSD_VERSION,
        help="The FreeBSD release",
    )
    vm_parser.add_argument(
        "--memory", "-m", type=int, default=4, help="Memory of the VM in GB"
    )
    vm_parser.add_argument("--cpus", "-c", type=int, default=2)

    extract_parser = subparsers.add_parser(
        "extract-openemr", help="Extract the PHAR for serving it with Apache"
    )
    add_target_arg(extract_parser)
    extract_parser.add_argument("--output-dir", type=pathlib.Path, default=None)

    apache_parser = subparsers.add_parser(
        "setup-apache", help="Configure the host's Apache to serve OpenEMR"
    )
    add_target_arg(apache_parser)
    apache_parser.add_argument("variant", choices=["cgi", "fpm"])

    fpm_parser = subparsers.add_parser("run-fpm", help="Start the static php-fpm")
    add_target_arg(fpm_parser)

    for name, help_text in (
        ("test-cgi", "Check the Apache CGI setup"),
        ("test-fpm", "Check the Apache php-fpm setup"),
    ):
        add_target_arg(subparsers.add_parser(name, help=help_text))

    bench_parser = subparsers.add_parser(
        "benchmark", help="Benchmark a running server with ApacheBench"
    )
    bench_parser.add_argument("url", nargs="?", default="http://localhost:8080/")
    bench_parser.add_argument("--concurrency", "-c", type=int, default=10)
    bench_parser.add_argument("--requests", "-n", type=int, default=100)

    manifest_parser = subparsers.add_parser(
        "manifest", help="Show the artifacts of a target"
    )
    add_target_arg(manifest_parser)

    return parser


def settings_from_args(args) -> BuildSettings:
    settings = BuildSettings.from_env()
    for attr, value in (
        ("openemr_version", args.openemr_version),
        ("php_version", args.php_version),
        ("freebsd_version", args.freebsd_version),
        ("php_extensions", args.extensions),
        ("spc_release_tag", args.spc_release_tag),
        ("docker_base_image", args.docker_base_image),
    ):
        if value:
            setattr(settings, attr, value)
    settings.debug = args.debug
    return settings


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.action:
        raise RuntimeError("No action specified")

    if args.verbose > 0:
        LOGGER.setLevel((3 - min(args.verbose, 2)) * 10)
    else:
        LOGGER.setLevel("ERROR")

    project_root: pathlib.Path = args.project_root.absolute()
    action: ACTION_T = args.action
    coro: Coroutine[Any, Any, Any] | None = None

    if action == "build":
        from openemr_static.builders import get_builder

        async def _build():
            manifest = await get_builder(
                args.target, settings_from_args(args), project_root
            ).build()
            return "\n".join(
                [f"Built OpenEMR {manifest.openemr_version} for {manifest.target}:"]
                + [
                    f"  {kind}: {manifest.path_of(kind)}"
                    for kind in manifest.artifacts
                ]
            )

        coro = _build()

    elif action == "run-web-server":
        from openemr_static import server

        if args.target == BuildTarget.MACOS:
            coro = server.run_local_web_server(project_root, args.port)
        elif args.target == BuildTarget.FREEBSD:
            coro = server.run_freebsd_vm(
                project_root,
                args.port,
                version=BuildSettings.from_env().freebsd_version,
            )
        else:
            coro = server.run_docker_web_server(project_root, args.target, args.port)

    elif action == "run-freebsd-vm":
        from openemr_static.server import run_freebsd_vm

        coro = run_freebsd_vm(
            project_root,
            port=args.port,
            version=args.version,
            memory_gb=args.memory,
            cpus=args.cpus,
        )

    elif action == "extract-openemr":
        from openemr_static.apache import extract_openemr

        coro = extract_openemr(project_root, args.target, args.output_dir)

    elif action == "setup-apache":
        from openemr_static.apache import setup_apache

        coro = setup_apache(project_root, args.target, args.variant)

    elif action == "run-fpm":
        from openemr_static.apache import run_fpm

        coro = run_fpm(project_root, args.target)

    elif action in ("test-cgi", "test-fpm"):
        from openemr_static import smoke

        async def _smoke():
            check = smoke.test_cgi_setup if action == "test-cgi" else smoke.test_fpm_setup
            return str(await check(project_root, args.target))

        coro = _smoke()

    elif action == "benchmark":
        from openemr_static.smoke import run_benchmark

        coro = run_benchmark(args.url, args.concurrency, args.requests)

    elif action == "manifest":
        from openemr_static.manifest import locate_target_artifacts

        async def _describe():
            return (await locate_target_artifacts(project_root, args.target)).describe()

        coro = _describe()

    else:
        assert False, f"invalid action: {action}"

    assert coro is not None
    try:
        res = asyncio.run(coro)
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")
        raise SystemExit(130)

    if isinstance(res, int):
        if res:
            raise SystemExit(res)
    elif res:
        print(res)
