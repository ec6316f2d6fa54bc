import os
import tempfile
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List

from serialgrab.errors import PayloadDecodeError, TransportFailure
from serialgrab.framing import FramedTransferProtocol, decode_payload
from serialgrab.utils import log_error, log_info, log_warning, mirror_path


class OutcomeKind(Enum):
    SUCCESS = "success"
    ALREADY_EXISTS = "already_exists"
    TOO_LARGE = "too_large"
    UNREADABLE = "unreadable"
    DECODE_FAILURE = "decode_failure"
    TRANSPORT_FAILURE = "transport_failure"
    WRITE_FAILURE = "write_failure"


@dataclass(frozen=True)
class TransferRequest:
    remote_path: str
    local_path: str
    max_size: int


@dataclass
class TransferOutcome:
    request: TransferRequest
    kind: OutcomeKind
    bytes_written: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.ALREADY_EXISTS)


def requests_for_paths(paths: Iterable[str], output_root: str, max_size: int) -> List[TransferRequest]:
    return [
        TransferRequest(remote_path=path, local_path=mirror_path(output_root, path), max_size=max_size)
        for path in paths
    ]


def read_path_list(list_file: str) -> List[str]:
    """Remote paths from a text file, one per line; blank lines and ``#`` comments are skipped."""
    paths: List[str] = []
    with open(list_file, "r", encoding="utf-8") as handle:
        for line in handle:
            path = line.strip()
            if not path or path.startswith("#"):
                continue
            paths.append(path)
    return paths


def summarize(outcomes: List[TransferOutcome]) -> Dict[str, int]:
    counts = Counter(outcome.kind.value for outcome in outcomes)
    return {kind.value: counts.get(kind.value, 0) for kind in OutcomeKind}


class TransferOrchestrator:
    def __init__(self, protocol: FramedTransferProtocol):
        self.protocol = protocol
        self.outcomes: List[TransferOutcome] = []

    def run(self, requests: Iterable[TransferRequest]) -> List[TransferOutcome]:
        requests = list(requests)
        for position, request in enumerate(requests, start=1):
            log_info(f"[{position}/{len(requests)}] {request.remote_path}")
            try:
                outcome = self.transfer(request)
            except TransportFailure as exc:
                self.outcomes.append(TransferOutcome(request, OutcomeKind.TRANSPORT_FAILURE, error=str(exc)))
                raise
            self.outcomes.append(outcome)
            if outcome.kind is OutcomeKind.TRANSPORT_FAILURE:
                raise TransportFailure(outcome.error)
        return self.outcomes

    def transfer(self, request: TransferRequest) -> TransferOutcome:
        if os.path.exists(request.local_path):
            log_info(f"skipping {request.remote_path}: {request.local_path} already exists")
            return TransferOutcome(request, OutcomeKind.ALREADY_EXISTS)

        result = self.protocol.fetch_file(request.remote_path, request.max_size)
        if result.empty:
            message = f"no output from device for {request.remote_path}"
            log_error(message)
            return TransferOutcome(request, OutcomeKind.TRANSPORT_FAILURE, error=message)
        if result.too_large:
            message = f"{request.remote_path} exceeds {request.max_size} encoded bytes"
            log_warning(f"skipping {message}")
            return TransferOutcome(request, OutcomeKind.TOO_LARGE, error=message)
        if result.unreadable:
            message = f"{request.remote_path} is missing or unreadable on the device"
            log_warning(f"skipping {message}")
            return TransferOutcome(request, OutcomeKind.UNREADABLE, error=message)

        try:
            if result.payload is None:
                raise PayloadDecodeError("no delimited payload in captured output")
            data = decode_payload(result.payload)
        except PayloadDecodeError as exc:
            message = f"{request.remote_path}: {exc}"
            log_error(f"DECODE FAILURE {message}; the console may not be in a clean state")
            return TransferOutcome(request, OutcomeKind.DECODE_FAILURE, error=message)

        try:
            written = self.write(request, data)
        except OSError as exc:
            message = f"{request.local_path}: {exc}"
            log_error(f"write failed for {message}")
            return TransferOutcome(request, OutcomeKind.WRITE_FAILURE, error=message)
        log_info(f"saved {request.remote_path} -> {request.local_path} ({written} bytes)")
        return TransferOutcome(request, OutcomeKind.SUCCESS, bytes_written=written)

    def write(self, request: TransferRequest, data: bytes) -> int:
        directory = os.path.dirname(request.local_path)
        os.makedirs(directory, exist_ok=True)
        # unique hidden staging name, never another mirrored file
        handle = tempfile.NamedTemporaryFile(dir=directory, prefix=".serialgrab-", suffix=".tmp", delete=False)
        partial = handle.name
        try:
            with handle:
                handle.write(data)
            os.replace(partial, request.local_path)
        except OSError:
            if os.path.exists(partial):
                try:
                    os.remove(partial)
                except OSError:
                    pass
            raise
        return len(data)
