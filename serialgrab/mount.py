import shlex
import posixpath
from enum import Enum
from typing import Callable, Optional

from serialgrab.config import PROBE_DIR_NAME, READ_ONLY_INDICATOR
from serialgrab.errors import ReadOnlyMount, TransportFailure
from serialgrab.framing import FramedTransferProtocol
from serialgrab.utils import log_error, log_info, log_warning

PROBE_MAX_SIZE = 4096


class MountState(Enum):
    UNKNOWN = "unknown"
    WRITABLE = "writable"
    READ_ONLY = "read_only"
    REMEDIATION_ATTEMPTED = "remediation_attempted"


class MountWritabilityProbe:
    """Checks that the remote mount used for temporary files accepts writes.

    A read-only result may be remediated once with an operator-supplied
    command (for example ``mount -o remount,rw /``). ``confirm`` is asked
    before that command runs; declining is fatal.
    """

    def __init__(
        self,
        protocol: FramedTransferProtocol,
        mount_point: str,
        remediation_command: Optional[str] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.protocol = protocol
        self.mount_point = mount_point
        self.remediation_command = remediation_command
        self.confirm = confirm
        self.state = MountState.UNKNOWN
        self.remediation_attempted = False

    def probe_command(self) -> str:
        target = shlex.quote(posixpath.join(self.mount_point, PROBE_DIR_NAME))
        return f"mkdir {target} && rm -r {target}"

    def probe(self) -> MountState:
        result = self.protocol.run_text(self.probe_command(), PROBE_MAX_SIZE, f"probe {self.mount_point}")
        if result.empty:
            raise TransportFailure(f"no output from device while probing {self.mount_point}")
        if READ_ONLY_INDICATOR in result.normalized:
            self.state = MountState.READ_ONLY
        else:
            self.state = MountState.WRITABLE
        log_info(f"mount {self.mount_point} is {self.state.value}")
        return self.state

    def remediate(self) -> None:
        if self.remediation_attempted:
            raise ReadOnlyMount(f"{self.mount_point} is read-only and remediation was already attempted")
        self.remediation_attempted = True
        self.state = MountState.REMEDIATION_ATTEMPTED
        log_warning(f"remediating read-only mount with: {self.remediation_command}")
        result = self.protocol.run_text(self.remediation_command, PROBE_MAX_SIZE, "remediation")
        if result.empty:
            raise TransportFailure("no output from device while running remediation command")

    def ensure_writable(self) -> MountState:
        if self.probe() is MountState.WRITABLE:
            return self.state

        if self.remediation_attempted:
            raise ReadOnlyMount(f"{self.mount_point} is still read-only after remediation")
        if not self.remediation_command:
            raise ReadOnlyMount(f"{self.mount_point} is read-only and no remediation command is configured")
        if self.confirm is not None and not self.confirm(self.remediation_command):
            raise ReadOnlyMount(f"{self.mount_point} is read-only and remediation was declined")

        self.remediate()
        if self.probe() is MountState.READ_ONLY:
            log_error(f"{self.mount_point} is still read-only after remediation")
            raise ReadOnlyMount(f"{self.mount_point} is still read-only after remediation")
        return self.state
