import time
from enum import Enum
from typing import Callable, Optional

from serialgrab.config import DEFAULT_POLL_INTERVAL, DEFAULT_STABLE_POLLS, DELIMITER, SENTINELS
from serialgrab.utils import normalize_output


class DetectorState(Enum):
    SENT = "sent"
    AWAITING_PAYLOAD_START = "awaiting_payload_start"
    STREAMING = "streaming"
    STABILIZING = "stabilizing"
    DONE = "done"


class CompletionDetector:
    """Decides when a framed command has finished emitting output.

    The console never exits, so completion is inferred from the captured
    stream: the payload is ready once the delimiter has been seen twice (or
    a sentinel replaced the payload), and the stream is complete once
    ``stable_polls`` consecutive snapshots are byte-identical. A sentinel
    right after the opening delimiter finishes immediately. There is no
    overall timeout.
    """

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stable_polls: int = DEFAULT_STABLE_POLLS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if stable_polls < 1:
            raise ValueError("stable_polls must be at least 1")
        self.poll_interval = poll_interval
        self.stable_polls = stable_polls
        self.sleep = sleep
        self.state = DetectorState.SENT
        self.finish_reason = ""
        self.polls = 0
        self._last_snapshot: Optional[bytes] = None
        self._identical = 0

    def observe(self, snapshot: bytes, finished: bool = False) -> DetectorState:
        if self.state is DetectorState.DONE:
            return self.state
        self.polls += 1

        if finished:
            return self._done("stream ended")

        if self.state is DetectorState.SENT and snapshot:
            self.state = DetectorState.AWAITING_PAYLOAD_START

        text = normalize_output(snapshot)
        if self.state is DetectorState.AWAITING_PAYLOAD_START and DELIMITER in text:
            self.state = DetectorState.STREAMING

        if self.state is DetectorState.STREAMING:
            if any(DELIMITER + sentinel in text for sentinel in SENTINELS):
                return self._done("payload omitted")
            if text.count(DELIMITER) >= 2:
                self.state = DetectorState.STABILIZING
                self._last_snapshot = snapshot
                self._identical = 1
                return self._check_stable()
        elif self.state is DetectorState.STABILIZING:
            if snapshot == self._last_snapshot:
                self._identical += 1
            else:
                self._last_snapshot = snapshot
                self._identical = 1
            return self._check_stable()

        return self.state

    def wait(self, channel) -> bytes:
        """Poll ``channel`` until the command is complete and return its output."""
        while True:
            finished = channel.is_finished()
            snapshot = channel.snapshot()
            if self.observe(snapshot, finished) is DetectorState.DONE:
                channel.mark_done(self.finish_reason)
                return snapshot
            self.sleep(self.poll_interval)

    def _check_stable(self) -> DetectorState:
        if self._identical >= self.stable_polls:
            return self._done("output stable")
        return self.state

    def _done(self, reason: str) -> DetectorState:
        self.state = DetectorState.DONE
        self.finish_reason = reason
        return self.state
