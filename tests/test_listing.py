"""
Tests for remote enumeration: temp-artifact filtering, the edit pause and
the exclude filter ordering.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from conftest import CLEAR, PROMPT, FakeConsole, FakeDevice, Reply, framed_output, wrap_echo
from serialgrab.config import DELIMITER, SIZE_SENTINEL
from serialgrab.errors import EnumerationEmpty, EnumerationFailed
from serialgrab.framing import FramedTransferProtocol
from serialgrab.listing import RemoteFileEnumerator, apply_exclude, parse_listing

FILES = {
    "/etc/config/network": b"config interface 'lan'\n",
    "/etc/config/system": b"config system\n",
    "/etc/config/wireless.bak": b"old\n",
    "/var/other": b"not listed\n",
}


def make_enumerator(device: FakeDevice, tmp_path: Path, **kwargs):
    console = FakeConsole(device)
    protocol = FramedTransferProtocol(console, poll_interval=0, sleep=lambda _: None)
    listing = tmp_path / "listing.txt"
    return RemoteFileEnumerator(protocol, str(listing), max_size=100000, **kwargs), console, listing


class TestParse:
    def test_parse_listing(self) -> None:
        text = "/a\n\n  /b  \nrelative\n/a\n/c"
        assert parse_listing(text) == ["/a", "/b", "/c"]

    def test_apply_exclude(self) -> None:
        paths = ["/etc/a.conf", "/etc/a.bak", "/var/log/x"]
        assert apply_exclude(paths, r"\.bak$|^/var/") == ["/etc/a.conf"]
        assert apply_exclude(paths, None) == paths


class TestEnumerate:
    def test_lists_files_and_drops_temp_artifact(self, tmp_path: Path) -> None:
        enumerator, console, listing = make_enumerator(FakeDevice(files=FILES), tmp_path)
        paths = enumerator.enumerate("/etc/config")
        assert paths == ["/etc/config/network", "/etc/config/system", "/etc/config/wireless.bak"]
        assert "find /etc/config -type f" in console.commands[0]
        assert listing.read_text().splitlines() == paths

    def test_artifact_inside_listed_tree(self, tmp_path: Path) -> None:
        device = FakeDevice(files={"/tmp/keep.txt": b"x"})
        enumerator, _, _ = make_enumerator(device, tmp_path)
        assert enumerator.enumerate("/tmp") == ["/tmp/keep.txt"]

    def test_exclude_applied_after_edit_pause(self, tmp_path: Path) -> None:
        seen: List[List[str]] = []

        def pause(path: str) -> None:
            lines = Path(path).read_text().splitlines()
            seen.append(lines)
            kept = [line for line in lines if not line.endswith("/system")]
            kept.append("/etc/config/added.bak")
            Path(path).write_text("\n".join(kept) + "\n")

        enumerator, _, _ = make_enumerator(
            FakeDevice(files=FILES), tmp_path, exclude_pattern=r"\.bak$", pause=pause,
        )
        paths = enumerator.enumerate("/etc/config")
        # the pause saw the unfiltered listing, including what exclude drops later
        assert "/etc/config/wireless.bak" in seen[0]
        assert paths == ["/etc/config/network"]

    def test_empty_after_filter_is_fatal(self, tmp_path: Path) -> None:
        enumerator, _, _ = make_enumerator(FakeDevice(files=FILES), tmp_path, exclude_pattern=".")
        with pytest.raises(EnumerationEmpty):
            enumerator.enumerate("/etc/config")

    def test_empty_directory_is_fatal(self, tmp_path: Path) -> None:
        enumerator, _, _ = make_enumerator(FakeDevice(), tmp_path)
        with pytest.raises(EnumerationEmpty):
            enumerator.enumerate("/srv")

    def test_listing_too_large(self, tmp_path: Path) -> None:
        files = {f"/data/file{i:04d}": b"" for i in range(50)}
        console = FakeConsole(FakeDevice(files=files))
        protocol = FramedTransferProtocol(console, poll_interval=0, sleep=lambda _: None)
        enumerator = RemoteFileEnumerator(protocol, str(tmp_path / "l.txt"), max_size=64)
        with pytest.raises(EnumerationFailed):
            enumerator.enumerate("/data")

    def test_size_marker_before_closing_delimiter(self, tmp_path: Path) -> None:
        delim = DELIMITER.encode("ascii")

        def respond(command: str) -> Reply:
            return Reply(chunks=[
                wrap_echo(command) + CLEAR + delim + b"\r\n" + SIZE_SENTINEL.encode() + b"\r\n",
                delim + b"\r\n" + PROMPT,
            ])

        protocol = FramedTransferProtocol(FakeConsole(respond), poll_interval=0, sleep=lambda _: None)
        enumerator = RemoteFileEnumerator(protocol, str(tmp_path / "l.txt"), max_size=64)
        with pytest.raises(EnumerationFailed, match="exceeds 64"):
            enumerator.enumerate("/data")

    def test_garbled_listing(self, tmp_path: Path) -> None:
        console = FakeConsole(lambda command: Reply(chunks=[framed_output(command, b"not*base64\r\n")]))
        protocol = FramedTransferProtocol(console, poll_interval=0, sleep=lambda _: None)
        enumerator = RemoteFileEnumerator(protocol, str(tmp_path / "l.txt"), max_size=1000)
        with pytest.raises(EnumerationFailed):
            enumerator.enumerate("/etc")

    def test_silent_device(self, tmp_path: Path) -> None:
        enumerator, _, _ = make_enumerator(FakeDevice(silent=True), tmp_path)
        with pytest.raises(EnumerationFailed):
            enumerator.enumerate("/etc")
