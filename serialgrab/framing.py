import os
import time
import base64
import binascii
import shlex
import posixpath
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from serialgrab.completion import CompletionDetector
from serialgrab.config import (
    DELIMITER, DELIMITER_HALF, DELIMITER_SYMBOL, SIZE_SENTINEL, SIZE_SENTINEL_WORD,
    UNREADABLE_SENTINEL, UNREADABLE_SENTINEL_WORD, SENTINELS, DEFAULT_POLL_INTERVAL,
    DEFAULT_STABLE_POLLS, DEFAULT_REMOTE_TMP_ROOT
)
from serialgrab.errors import PayloadDecodeError
from serialgrab.utils import log_info, normalize_output

DELIM = "delim"
TEXT = "text"

Token = Tuple[str, str]


# ========= Output parsing =========
def tokenize(text: str) -> List[Token]:
    """Split normalized output into DELIM and TEXT tokens.

    Two adjacent delimiters yield an empty TEXT token between them so an
    empty payload is still a bounded segment.
    """
    tokens: List[Token] = []
    position = 0
    while True:
        index = text.find(DELIMITER, position)
        if index < 0:
            break
        if index > position or (tokens and tokens[-1][0] == DELIM):
            tokens.append((TEXT, text[position:index]))
        tokens.append((DELIM, DELIMITER))
        position = index + len(DELIMITER)
    if position < len(text):
        tokens.append((TEXT, text[position:]))
    return tokens


def select_payload(tokens: List[Token]) -> Optional[str]:
    """Last delimiter-bounded segment free of delimiter fragments.

    Earlier bounded segments are echo or prompt noise. Stray delimiter
    symbols left at the edges of the chosen segment are dropped. A size or
    unreadable sentinel right after the last delimiter is returned even
    when the closing delimiter has not been captured yet.
    """
    if len(tokens) >= 2 and tokens[-1][0] == TEXT and tokens[-2][0] == DELIM:
        for sentinel in SENTINELS:
            if tokens[-1][1].startswith(sentinel):
                return sentinel
    selected: Optional[str] = None
    for index in range(1, len(tokens) - 1):
        kind, value = tokens[index]
        if kind != TEXT:
            continue
        if tokens[index - 1][0] != DELIM or tokens[index + 1][0] != DELIM:
            continue
        if DELIMITER_HALF in value:
            continue
        selected = value
    if selected is None:
        return None
    return selected.replace(DELIMITER_SYMBOL, "")


def extract_payload(raw: bytes) -> Optional[str]:
    return select_payload(tokenize(normalize_output(raw)))


def decode_payload(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PayloadDecodeError(f"invalid base64 payload ({len(text)} chars): {exc}") from exc


# ========= Remote producers =========
def file_producer(remote_path: str) -> str:
    return f"base64 {shlex.quote(remote_path)} > $T/payload || rm -f $T/payload"


def listing_producer(directory: str) -> str:
    return (
        f"find {shlex.quote(directory)} -type f > $T/list 2>/dev/null; "
        "base64 $T/list > $T/payload || rm -f $T/payload"
    )


def text_producer(command: str) -> str:
    return f"{{ {command}; }} > $T/payload 2>&1"


@dataclass
class FramedResult:
    raw: bytes
    normalized: str
    payload: Optional[str]
    temp_dir: str
    finish_reason: str = ""

    @property
    def empty(self) -> bool:
        return not self.raw

    @property
    def too_large(self) -> bool:
        return self.payload == SIZE_SENTINEL

    @property
    def unreadable(self) -> bool:
        return self.payload == UNREADABLE_SENTINEL


class FramedTransferProtocol:
    def __init__(
        self,
        channel,
        remote_tmp_root: str = DEFAULT_REMOTE_TMP_ROOT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stable_polls: int = DEFAULT_STABLE_POLLS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.channel = channel
        self.remote_tmp_root = remote_tmp_root
        self.poll_interval = poll_interval
        self.stable_polls = stable_polls
        self.sleep = sleep
        self.command_counter = 0

    def new_temp_dir(self) -> str:
        self.command_counter += 1
        stamp = f"{int(time.time() * 1000)}_{os.getpid()}_{self.command_counter}"
        return posixpath.join(self.remote_tmp_root, f".serialgrab.{stamp}")

    def build_command(self, producer: str, max_size: int, temp_dir: str) -> str:
        return "; ".join([
            "clear",
            f"T={shlex.quote(temp_dir)}",
            "mkdir -p $T && chmod 700 $T",
            producer,
            f"D={DELIMITER_HALF}",
            f"S={SIZE_SENTINEL_WORD}",
            f"U={UNREADABLE_SENTINEL_WORD}",
            "echo $D$D",
            (
                "if [ ! -f $T/payload ]; then echo %%$U%%; "
                f'elif [ "$(stat -c %s $T/payload)" -gt {int(max_size)} ]; then echo %%$S%%; '
                "else cat $T/payload; fi"
            ),
            "echo $D$D",
            "rm -r $T",
        ])

    def execute(self, producer: str, max_size: int, label: str) -> FramedResult:
        temp_dir = self.new_temp_dir()
        command = self.build_command(producer, max_size, temp_dir)
        detector = CompletionDetector(self.poll_interval, self.stable_polls, self.sleep)
        try:
            self.channel.send(command)
            raw = detector.wait(self.channel)
        finally:
            self.channel.close()

        normalized = normalize_output(raw)
        result = FramedResult(
            raw=raw,
            normalized=normalized,
            payload=select_payload(tokenize(normalized)),
            temp_dir=temp_dir,
            finish_reason=detector.finish_reason,
        )
        log_info(f"{label}: {len(raw)} bytes captured ({detector.finish_reason})")
        return result

    def fetch_file(self, remote_path: str, max_size: int) -> FramedResult:
        return self.execute(file_producer(remote_path), max_size, f"fetch {remote_path}")

    def fetch_listing(self, directory: str, max_size: int) -> FramedResult:
        return self.execute(listing_producer(directory), max_size, f"list {directory}")

    def run_text(self, command: str, max_size: int, label: str) -> FramedResult:
        return self.execute(text_producer(command), max_size, label)
