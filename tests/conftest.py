import pathlib
from collections.abc import Callable
from dataclasses import dataclass

import pytest

from openemr_static.data import BuildSettings


@dataclass
class FakeCommandResult:
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""


class FakeRunCommand:
    """Stand-in for :py:class:`obs_package_update.util.RunCommand` that
    records the commands and returns the result of the first matching
    prefix in ``results``.

    """

    def __init__(
        self,
        results: dict[str, FakeCommandResult] | None = None,
        side_effect: Callable[[str, str | None, dict | None], None] | None = None,
    ) -> None:
        self.results = results or {}
        self.side_effect = side_effect
        self.calls: list[tuple[str, str | None, dict | None]] = []

    async def __call__(
        self,
        cmd: str,
        cwd: str | None = None,
        raise_on_error: bool = True,
        env: dict | None = None,
    ) -> FakeCommandResult:
        self.calls.append((cmd, cwd, env))
        if self.side_effect:
            self.side_effect(cmd, cwd, env)
        for prefix, res in self.results.items():
            if cmd.startswith(prefix):
                return res
        return FakeCommandResult()

    @property
    def commands(self) -> list[str]:
        return [cmd for cmd, _, _ in self.calls]


@pytest.fixture
def fake_run_cmd() -> FakeRunCommand:
    return FakeRunCommand()


@pytest.fixture
def settings() -> BuildSettings:
    return BuildSettings.from_env({})


def make_file(path: pathlib.Path, contents: str = "", executable: bool = False) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents)
    if executable:
        path.chmod(0o755)
    return path
