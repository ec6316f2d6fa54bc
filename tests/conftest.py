"""
Shared fixtures for serialgrab tests.

No serial hardware is involved. ``FakeDevice`` plays the remote shell: it
reads the framed command the protocol built, works out what the real shell
would print (command echo, delimiters, base64 payload, prompt) and hands it
to ``FakeConsole``, which reveals the output a chunk per snapshot the way a
slow serial link would.
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

import pytest

from serialgrab.config import DELIMITER, SIZE_SENTINEL, UNREADABLE_SENTINEL
from serialgrab.framing import FramedTransferProtocol
from serialgrab.utils import set_run_log

PROMPT = b"root@device:~# "
CLEAR = b"\x1b[H\x1b[J"


@dataclass
class Reply:
    """What the console shows after one command."""
    chunks: List[bytes] = field(default_factory=list)
    eof: bool = False


def chunked(data: bytes, size: int = 4096) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)] or [b""]


def wrap_echo(command: str, width: int = 80) -> bytes:
    """Command echo as a terminal shows it: wrapped with CR/LF at ``width``."""
    raw = command.encode("utf-8")
    lines = [raw[i:i + width] for i in range(0, len(raw), width)]
    return PROMPT + b"\r\n".join(lines) + b"\r\n"


def framed_output(command: str, body: bytes) -> bytes:
    delim = DELIMITER.encode("ascii")
    return (
        wrap_echo(command)
        + CLEAR
        + delim + b"\r\n"
        + body
        + delim + b"\r\n"
        + PROMPT
    )


def encoded_lines(data: bytes) -> bytes:
    return base64.encodebytes(data).replace(b"\n", b"\r\n")


class FakeDevice:
    """Answers framed commands the way a BusyBox shell on the device would."""

    def __init__(
        self,
        files: Optional[Dict[str, bytes]] = None,
        read_only: bool = False,
        remount_fixes: bool = True,
        silent: bool = False,
    ):
        self.files = dict(files or {})
        self.read_only = read_only
        self.remount_fixes = remount_fixes
        self.silent = silent
        self.corrupt: Dict[str, bytes] = {}
        self.remounts: List[str] = []
        self.commands: List[str] = []

    def __call__(self, command: str) -> Reply:
        self.commands.append(command)
        if self.silent:
            return Reply(chunks=[], eof=True)

        temp_dir = re.search(r"T=(\S+?);", command).group(1)
        max_size = int(re.search(r"-gt (\d+)", command).group(1))

        listing = re.search(r"find (\S+) -type f", command)
        fetch = re.search(r"base64 (\S+) > \$T/payload", command)
        text = re.search(r"\{ (.*?); \} > \$T/payload", command)

        if listing:
            root = listing.group(1).rstrip("/")
            names = [path for path in self.files if path.startswith(root + "/")]
            names.append(f"{temp_dir}/list")
            return self._payload(command, encoded_lines("\n".join(names).encode() + b"\n"), max_size)
        if fetch:
            path = fetch.group(1)
            if path in self.corrupt:
                return self._reply(command, self.corrupt[path])
            if path not in self.files:
                err = f"base64: can't open '{path}': No such file or directory\r\n".encode()
                return self._reply(command, UNREADABLE_SENTINEL.encode() + b"\r\n", prefix=err)
            return self._payload(command, encoded_lines(self.files[path]), max_size)
        if text:
            inner = text.group(1)
            if inner.startswith("mkdir "):
                if self.read_only:
                    target = inner.split()[1]
                    body = f"mkdir: can't create directory '{target}': Read-only file system\r\n".encode()
                else:
                    body = b""
                return self._payload(command, body, max_size)
            self.remounts.append(inner)
            if self.remount_fixes:
                self.read_only = False
            return self._payload(command, b"", max_size)
        raise AssertionError(f"unexpected command: {command}")

    def _payload(self, command: str, body: bytes, max_size: int) -> Reply:
        if len(body.replace(b"\r\n", b"\n")) > max_size:
            body = SIZE_SENTINEL.encode() + b"\r\n"
        return self._reply(command, body)

    def _reply(self, command: str, body: bytes, prefix: bytes = b"") -> Reply:
        output = framed_output(command, body)
        if prefix:
            echo = wrap_echo(command)
            output = echo + prefix + output[len(echo):]
        return Reply(chunks=chunked(output))


Responder = Union[FakeDevice, Callable[[str], Reply]]


class FakeConsole:
    """Stands in for a SerialChannel; each snapshot reveals one more chunk."""

    def __init__(self, responder: Responder):
        self.responder = responder
        self.commands: List[str] = []
        self.done_reasons: List[str] = []
        self.closes = 0
        self.shutdowns = 0
        self.active = False
        self._pending: List[bytes] = []
        self._output = b""
        self._eof = False

    def send(self, command: str) -> None:
        self.close()
        self.commands.append(command)
        reply = self.responder(command)
        self._pending = list(reply.chunks)
        self._output = b""
        self._eof = reply.eof
        self.active = True

    def snapshot(self) -> bytes:
        if self._pending:
            self._output += self._pending.pop(0)
        return self._output

    def is_finished(self) -> bool:
        return self._eof and not self._pending

    def mark_done(self, reason: str) -> None:
        self.done_reasons.append(reason)

    def close(self) -> None:
        if self.active:
            self.closes += 1
        self.active = False

    def shutdown(self) -> None:
        self.close()
        self.shutdowns += 1


@pytest.fixture(autouse=True)
def no_run_log():
    yield
    set_run_log(None)


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def console(device: FakeDevice) -> FakeConsole:
    return FakeConsole(device)


@pytest.fixture
def protocol(console: FakeConsole) -> FramedTransferProtocol:
    return FramedTransferProtocol(console, poll_interval=0, sleep=lambda _: None)
