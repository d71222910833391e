"""Driving a virtual machine through QEMU's telnet serial console."""

import asyncio
import codecs
import pathlib
import re
from collections.abc import Sequence

import aiofiles

from openemr_static.logger import LOGGER

#: telnet "interpret as command" byte
_IAC = 0xFF
_SB = 0xFA
_SE = 0xF0
# WILL, WONT, DO, DONT carry one option byte
_NEGOTIATION = (0xFB, 0xFC, 0xFD, 0xFE)

_READ_SIZE = 4096

#: question of FreeBSD's pkg bootstrap
PKG_BOOTSTRAP_QUESTION = "Do you want to fetch and install it now? [y/N]:"

DEFAULT_PROMPT = "# "


def strip_telnet_commands(data: bytes) -> tuple[bytes, bytes]:
    """Removes the telnet negotiation sequences from ``data``.

    Returns the remaining bytes and the start of a sequence that is cut off
    at the end of ``data``, which has to be prepended to the next read.

    """
    out = bytearray()
    i = 0
    while i < len(data):
        byte = data[i]
        if byte != _IAC:
            out.append(byte)
            i += 1
            continue

        if i + 1 == len(data):
            return bytes(out), data[i:]
        cmd = data[i + 1]
        if cmd == _IAC:
            out.append(_IAC)
            i += 2
        elif cmd in _NEGOTIATION:
            if i + 2 >= len(data):
                return bytes(out), data[i:]
            i += 3
        elif cmd == _SB:
            end = data.find(bytes((_IAC, _SE)), i + 2)
            if end == -1:
                return bytes(out), data[i:]
            i = end + 2
        else:
            i += 2
    return bytes(out), b""


class SerialConsole:
    """Client for a serial console exposed by QEMU via
    ``-serial telnet::<port>,server,nowait``.

    Everything that is received is appended to ``transcript`` if set.

    """

    def __init__(
        self,
        host: str,
        port: int,
        transcript: pathlib.Path | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.transcript = transcript
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._buffer = ""
        #: bytes of a telnet sequence that continues in the next read
        self._pending = b""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def connect(self, attempts: int = 15, delay: float = 2) -> None:
        """Connects to the serial port, which QEMU opens a little after it
        started.

        Raises:
            :py:class:`ConnectionError`: if no connection could be made

        """
        for attempt in range(1, attempts + 1):
            try:
                self._reader, self._writer = await asyncio.open_connection(
                    self.host, self.port
                )
                LOGGER.debug("Connected to the serial console on port %d", self.port)
                return
            except OSError as exc:
                LOGGER.debug(
                    "Serial console not reachable yet (attempt %d/%d): %s",
                    attempt,
                    attempts,
                    exc,
                )
                await asyncio.sleep(delay)
        raise ConnectionError(
            f"Could not connect to the serial console on {self.host}:{self.port}"
        )

    async def close(self) -> None:
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError:
                pass
            self._writer = None
            self._reader = None

    async def __aenter__(self) -> "SerialConsole":
        if not self._writer:
            await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _log(self, text: str) -> None:
        if self.transcript:
            async with aiofiles.open(self.transcript, "a") as transcript:
                await transcript.write(text)

    async def _read(self) -> None:
        assert self._reader, "not connected"
        data = await self._reader.read(_READ_SIZE)
        if not data:
            raise EOFError("The serial console closed the connection")
        data, self._pending = strip_telnet_commands(self._pending + data)
        text = self._decoder.decode(data)
        self._buffer += text
        await self._log(text)

    async def expect(
        self, patterns: str | re.Pattern | Sequence[str | re.Pattern], timeout: float
    ) -> tuple[int, re.Match]:
        """Reads from the console until one of ``patterns`` matches.

        Plain strings match literally. Returns the index of the matching
        pattern and the match; the buffer is consumed up to the end of the
        match.

        Raises:
            :py:class:`asyncio.TimeoutError`: if nothing matched in time
            :py:class:`EOFError`: if the connection was closed

        """
        if isinstance(patterns, (str, re.Pattern)):
            patterns = [patterns]
        compiled = [
            p if isinstance(p, re.Pattern) else re.compile(re.escape(p))
            for p in patterns
        ]

        async def _wait() -> tuple[int, re.Match]:
            while True:
                found: tuple[int, re.Match] | None = None
                for index, pattern in enumerate(compiled):
                    if (match := pattern.search(self._buffer)) and (
                        found is None or match.start() < found[1].start()
                    ):
                        found = (index, match)
                if found:
                    self._buffer = self._buffer[found[1].end() :]
                    return found
                await self._read()

        return await asyncio.wait_for(_wait(), timeout=timeout)

    async def send_line(self, text: str) -> None:
        assert self._writer, "not connected"
        self._writer.write(text.encode() + b"\r")
        await self._writer.drain()

    async def login(
        self, user: str = "root", prompt: str = DEFAULT_PROMPT, timeout: float = 600
    ) -> None:
        """Logs in as ``user`` with an empty password, or does nothing if a
        shell prompt is already shown.

        """
        LOGGER.info("Waiting for the login prompt")
        nudged = False
        while True:
            try:
                index, _ = await self.expect(
                    ["login:", "Password:", prompt],
                    timeout=timeout if nudged else min(timeout, 60),
                )
            except asyncio.TimeoutError:
                if nudged:
                    raise
                # an already printed login prompt is not repeated
                await self.send_line("")
                nudged = True
                continue

            if index == 0:
                await self.send_line(user)
            elif index == 1:
                await self.send_line("")
            else:
                LOGGER.info("Logged in as %s", user)
                return

    async def run(
        self,
        command: str,
        prompt: str = DEFAULT_PROMPT,
        timeout: float = 600,
        answers: dict[str, str] | None = None,
    ) -> str:
        """Sends ``command`` and waits for the shell prompt, answering the
        interactive ``answers`` (question -> reply) on the way.

        Returns the output of the command.

        """
        answers = (
            {PKG_BOOTSTRAP_QUESTION: "y"} if answers is None else answers
        )
        questions = list(answers)

        LOGGER.debug("VM: %s", command)
        self._buffer = ""
        await self.send_line(command)

        output = ""
        while True:
            index, match = await self.expect(questions + [prompt], timeout=timeout)
            output += match.string[: match.end()]
            if index < len(questions):
                await self.send_line(answers[questions[index]])
            else:
                return output

    async def run_checked(
        self,
        command: str,
        marker: str,
        prompt: str = DEFAULT_PROMPT,
        timeout: float = 600,
    ) -> str:
        """Runs ``command`` and ensures that it succeeded by echoing
        ``marker`` afterwards.

        Raises:
            :py:class:`RuntimeError`: if the marker was not printed

        """
        output = await self.run(f"{command} && echo {marker}", prompt, timeout)
        # the echoed command line contains the marker as well
        if not re.search(rf"^{re.escape(marker)}\s*$", output, re.MULTILINE):
            raise RuntimeError(f"Command failed in the VM: {command}")
        return output
