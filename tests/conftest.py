import asyncio
from pathlib import Path
from typing import List

import pytest


class FakeStream:
    def __init__(self, data: bytes = b""):
        self._data = data

    async def read(self, n: int = -1) -> bytes:
        if n is None or n < 0:
            n = len(self._data)
        chunk, self._data = self._data[:n], self._data[n:]
        return chunk


class FakeProcess:
    def __init__(self, returncode: int = 0, stderr: bytes = b""):
        self.returncode = returncode
        self.stdout = FakeStream()
        self.stderr = FakeStream(stderr)
        self.killed = False

    async def wait(self) -> int:
        return self.returncode

    def kill(self) -> None:
        self.killed = True


class FakeFFmpeg:
    """Stands in for ``asyncio.create_subprocess_exec``; records every command."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.returncode = 0
        self.stderr = b"frame=  10 fps=0.0 q=-1.0 size=1kB time=00:00:01.00 bitrate=8.0kbits/s speed=2.0x\r"
        self.output = b"fake output"
        self.launch_error = None

    async def __call__(self, *cmd, **kwargs):
        if self.launch_error is not None:
            raise self.launch_error
        self.calls.append([str(part) for part in cmd])
        if self.output:
            target = Path(cmd[-1])
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(self.output)
        return FakeProcess(self.returncode, self.stderr)

    @property
    def last(self) -> List[str]:
        return self.calls[-1]

    def arg_after(self, flag: str, cmd: List[str] = None) -> str:
        command = cmd if cmd is not None else self.last
        return command[command.index(flag) + 1]


@pytest.fixture()
def fake_ffmpeg(monkeypatch):
    fake = FakeFFmpeg()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake)
    return fake
