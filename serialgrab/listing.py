import os
import re
from typing import Callable, List, Optional

from serialgrab.errors import EnumerationEmpty, EnumerationFailed, PayloadDecodeError
from serialgrab.framing import FramedTransferProtocol, decode_payload
from serialgrab.utils import log_info, log_warning


def parse_listing(text: str) -> List[str]:
    """Absolute paths from a newline-delimited listing, first occurrence kept."""
    seen = set()
    paths: List[str] = []
    for line in text.splitlines():
        path = line.strip()
        if not path.startswith("/") or path in seen:
            continue
        seen.add(path)
        paths.append(path)
    return paths


def write_listing(path: str, entries: List[str]) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        for entry in entries:
            handle.write(entry + "\n")


def read_listing(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as handle:
        return parse_listing(handle.read())


def apply_exclude(paths: List[str], pattern: Optional[str]) -> List[str]:
    if not pattern:
        return list(paths)
    compiled = re.compile(pattern)
    return [path for path in paths if not compiled.search(path)]


class RemoteFileEnumerator:
    def __init__(
        self,
        protocol: FramedTransferProtocol,
        listing_path: str,
        max_size: int,
        exclude_pattern: Optional[str] = None,
        pause: Optional[Callable[[str], None]] = None,
    ):
        self.protocol = protocol
        self.listing_path = listing_path
        self.max_size = max_size
        self.exclude_pattern = exclude_pattern
        self.pause = pause

    def fetch(self, directory: str) -> List[str]:
        result = self.protocol.fetch_listing(directory, self.max_size)
        if result.empty:
            raise EnumerationFailed(f"no output from device while listing {directory}")
        if result.too_large:
            raise EnumerationFailed(f"listing of {directory} exceeds {self.max_size} encoded bytes")
        if result.unreadable:
            raise EnumerationFailed(f"device could not produce a listing of {directory}")
        if result.payload is None:
            raise EnumerationFailed(f"listing of {directory} was not framed in the captured output")
        try:
            text = decode_payload(result.payload).decode("utf-8", errors="replace")
        except PayloadDecodeError as exc:
            raise EnumerationFailed(f"listing of {directory} could not be decoded: {exc}") from exc

        artifact_prefix = result.temp_dir.rstrip("/") + "/"
        return [path for path in parse_listing(text) if not path.startswith(artifact_prefix)]

    def enumerate(self, directory: str) -> List[str]:
        paths = self.fetch(directory)
        log_info(f"{directory}: {len(paths)} remote files listed")

        write_listing(self.listing_path, paths)
        if self.pause is not None:
            self.pause(self.listing_path)
            paths = read_listing(self.listing_path)
            log_info(f"{len(paths)} paths left after editing {self.listing_path}")

        if self.exclude_pattern:
            before = len(paths)
            paths = apply_exclude(paths, self.exclude_pattern)
            log_info(f"exclude {self.exclude_pattern!r} removed {before - len(paths)} paths")

        if not paths:
            log_warning(f"nothing to retrieve under {directory}")
            raise EnumerationEmpty(f"no files to retrieve under {directory}")
        return paths
