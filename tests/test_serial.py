import asyncio
import pathlib

import pytest
import pytest_asyncio

from openemr_static.serial import PKG_BOOTSTRAP_QUESTION
from openemr_static.serial import SerialConsole
from openemr_static.serial import strip_telnet_commands
from openemr_static.util import find_free_port

_PROMPT = "root@vm:~ # "

# IAC WILL ECHO, IAC WILL SUPPRESS-GO-AHEAD
_NEGOTIATION = b"\xff\xfb\x01\xff\xfb\x03"


@pytest.mark.parametrize(
    "data,expected,pending",
    [
        (b"login: ", b"login: ", b""),
        (_NEGOTIATION + b"login: ", b"login: ", b""),
        (b"a\xff\xffb", b"a\xffb", b""),
        (b"a\xff\xfa\x18\x01\xff\xf0b", b"ab", b""),
        (b"a\xff\xf1b", b"ab", b""),
        (b"login\xff", b"login", b"\xff"),
        (b"login\xff\xfb", b"login", b"\xff\xfb"),
        (b"a\xff\xfa\x18\x01", b"a", b"\xff\xfa\x18\x01"),
    ],
)
def test_strip_telnet_commands(data: bytes, expected: bytes, pending: bytes):
    assert strip_telnet_commands(data) == (expected, pending)


@pytest.mark.asyncio
async def test_sequences_split_across_reads():
    async def _split_writer(reader, writer):
        for chunk in (b"caf\xc3", b"\xa9 \xff", b"\xfb\x01login: "):
            writer.write(chunk)
            await writer.drain()
            await asyncio.sleep(0.05)
        await reader.read()
        writer.close()

    server = await asyncio.start_server(_split_writer, "127.0.0.1", 0)
    async with server:
        port = server.sockets[0].getsockname()[1]
        async with SerialConsole("127.0.0.1", port) as console:
            _, match = await console.expect("login: ", timeout=5)

    assert match.string == "café login: "


async def _fake_vm(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """A shell behind a telnet serial console: asks for a login, echoes the
    commands and knows ``true``, ``false`` and ``pkg``.

    """

    async def _read_line() -> str:
        return (await reader.readuntil(b"\r")).decode().rstrip("\r")

    try:
        writer.write(_NEGOTIATION + b"\r\nFreeBSD/arm64 (vm) (ttyu0)\r\n\r\nlogin: ")
        await _read_line()
        writer.write(b"Password:")
        await _read_line()
        writer.write(_PROMPT.encode())

        while True:
            cmd = await _read_line()
            writer.write(cmd.encode() + b"\r\n")
            program, _, marker = cmd.partition(" && echo ")
            if program == "pkg":
                writer.write(PKG_BOOTSTRAP_QUESTION.encode() + b" ")
                answer = await _read_line()
                writer.write(f"{answer}\r\nBootstrapping pkg\r\n".encode())
            elif program == "true" and marker:
                writer.write(marker.encode() + b"\r\n")
            writer.write(_PROMPT.encode())
            await writer.drain()
    except (asyncio.IncompleteReadError, ConnectionError):
        pass
    finally:
        writer.close()


@pytest_asyncio.fixture
async def vm_port():
    server = await asyncio.start_server(_fake_vm, "127.0.0.1", 0)
    async with server:
        yield server.sockets[0].getsockname()[1]


@pytest.mark.asyncio
async def test_login_and_run(vm_port: int, tmp_path: pathlib.Path):
    transcript = tmp_path / "serial.log"

    async with SerialConsole("127.0.0.1", vm_port, transcript) as console:
        await console.login(timeout=5)

        output = await console.run_checked("true", "OK_MARKER", timeout=5)
        assert "OK_MARKER\r\n" in output

        with pytest.raises(RuntimeError, match="Command failed in the VM: false"):
            await console.run_checked("false", "OK_MARKER", timeout=5)

    log = transcript.read_text()
    assert "login: " in log
    assert "\xff" not in log
    assert "true && echo OK_MARKER" in log


@pytest.mark.asyncio
async def test_run_answers_questions(vm_port: int):
    async with SerialConsole("127.0.0.1", vm_port) as console:
        await console.login(timeout=5)
        output = await console.run("pkg", timeout=5)

    assert PKG_BOOTSTRAP_QUESTION in output
    assert "y\r\nBootstrapping pkg" in output
    assert output.endswith(_PROMPT[-2:])


@pytest.mark.asyncio
async def test_expect_times_out(vm_port: int):
    async with SerialConsole("127.0.0.1", vm_port) as console:
        with pytest.raises(asyncio.TimeoutError):
            await console.expect("never printed", timeout=0.2)


@pytest.mark.asyncio
async def test_connect_gives_up():
    console = SerialConsole("127.0.0.1", find_free_port(20000, 30000))
    with pytest.raises(ConnectionError, match="Could not connect to the serial console"):
        await console.connect(attempts=2, delay=0)
