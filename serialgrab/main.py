import os
import re
import sys
import atexit
import signal
import argparse
from typing import List, Optional

from serialgrab.config import config
from serialgrab.channel import SerialChannel, create_channel
from serialgrab.errors import FatalError
from serialgrab.framing import FramedTransferProtocol
from serialgrab.listing import RemoteFileEnumerator
from serialgrab.mount import MountWritabilityProbe
from serialgrab.transfer import TransferOrchestrator, read_path_list, requests_for_paths, summarize
from serialgrab.utils import log_error, log_info, set_run_log

RUN_LOG_NAME = "serialgrab.log"
LISTING_NAME = "serialgrab-listing.txt"


def _confirm_remediation(command: str) -> bool:
    if config.ASSUME_YES:
        return True
    try:
        answer = input(f"Remote mount is read-only. Run `{command}` on the device? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _pause_for_edit(listing_path: str) -> None:
    try:
        input(f"Edit {listing_path} to drop unwanted paths, then press Enter to continue... ")
    except EOFError:
        pass


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Retrieve files from a device that only offers a serial console shell"
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--file", help="Absolute remote path of a single file")
    target.add_argument("--list", help="Local text file with one remote path per line")
    target.add_argument("--dir", help="Remote directory to retrieve recursively")

    parser.add_argument("--port", help="Serial port, e.g. /dev/ttyUSB0 (overrides SERIALGRAB_PORT)")
    parser.add_argument("--backend", choices=["serial", "terminal", "ssh"], help="How bytes reach the console")
    parser.add_argument("--terminal-command", help="Terminal client command line; {port} is substituted")
    parser.add_argument("--ssh-host", help="Console server holding the serial port (ssh backend)")
    parser.add_argument("--ssh-user", help="Console server user")
    parser.add_argument("--ssh-port", type=int, help="Console server SSH port")
    parser.add_argument("--ssh-key", help="Private key for the console server")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")

    parser.add_argument("-o", "--output", help="Local output root")
    parser.add_argument("--max-size", type=int, help="Largest base64-encoded file size to transfer, in bytes")
    parser.add_argument("--listing-max-size", type=int, help="Largest base64-encoded listing size (default: --max-size)")
    parser.add_argument("--remote-tmp", help="Remote directory for temporary files")
    parser.add_argument("--exclude", help="Regex; enumerated paths matching it are skipped")
    parser.add_argument("--edit-list", action="store_true", help="Pause so the enumerated listing can be edited")

    parser.add_argument("--probe-mount", action="store_true", help="Check the remote temp mount is writable first")
    parser.add_argument("--mount-point", help="Mount to probe (default: --remote-tmp)")
    parser.add_argument("--remount-command", help="Command run once if the mount is read-only")
    parser.add_argument("-y", "--yes", action="store_true", help="Run the remount command without asking")

    parser.add_argument("--poll-interval", type=float, help="Seconds between output snapshots")
    parser.add_argument("--stable-polls", type=int, help="Identical snapshots needed to call output complete")
    parser.add_argument("--log", help="Run log path (default: <output>/serialgrab.log)")
    parser.add_argument("--transcript", help="Append a JSON-lines transcript of console traffic here")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.port: config.PORT = args.port
    if args.backend: config.BACKEND = args.backend
    if args.terminal_command: config.TERMINAL_COMMAND = args.terminal_command
    if args.ssh_host: config.SSH_HOST = args.ssh_host
    if args.ssh_user: config.SSH_USER = args.ssh_user
    if args.ssh_port: config.SSH_PORT = args.ssh_port
    if args.ssh_key: config.SSH_KEY_PATH = args.ssh_key
    if args.no_verify_host: config.SSH_VERIFY_HOST_KEY = False

    if args.output: config.OUTPUT_ROOT = args.output
    if args.max_size is not None: config.MAX_SIZE = args.max_size
    if args.listing_max_size is not None: config.LISTING_MAX_SIZE = args.listing_max_size
    if args.remote_tmp: config.REMOTE_TMP_ROOT = args.remote_tmp
    if args.exclude: config.EXCLUDE_PATTERN = args.exclude
    if args.edit_list: config.EDIT_LIST = True

    if args.probe_mount: config.PROBE_MOUNT = True
    if args.mount_point: config.MOUNT_POINT = args.mount_point
    if args.remount_command: config.REMOUNT_COMMAND = args.remount_command
    if args.yes: config.ASSUME_YES = True

    if args.poll_interval is not None: config.POLL_INTERVAL = args.poll_interval
    if args.stable_polls is not None: config.STABLE_POLLS = args.stable_polls
    if args.log: config.RUN_LOG_PATH = args.log
    if args.transcript: config.TRANSCRIPT_PATH = args.transcript


def validate(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if not config.PORT:
        parser.error("serial port is required (via --port or SERIALGRAB_PORT env)")
    if config.BACKEND == "ssh" and not config.SSH_HOST:
        parser.error("ssh backend needs a console server (via --ssh-host or SERIALGRAB_SSH_HOST env)")
    if config.MAX_SIZE <= 0 or config.listing_max_size() <= 0:
        parser.error("size limits must be positive")
    if config.STABLE_POLLS < 1 or config.POLL_INTERVAL < 0:
        parser.error("--stable-polls must be >= 1 and --poll-interval >= 0")
    if args.file and not args.file.startswith("/"):
        parser.error("--file must be an absolute remote path")
    if args.dir and not args.dir.startswith("/"):
        parser.error("--dir must be an absolute remote path")
    if args.list and not os.path.isfile(args.list):
        parser.error(f"path list not found: {args.list}")
    if config.EXCLUDE_PATTERN:
        try:
            re.compile(config.EXCLUDE_PATTERN)
        except re.error as exc:
            parser.error(f"invalid --exclude pattern: {exc}")


def collect_paths(protocol: FramedTransferProtocol, args: argparse.Namespace) -> List[str]:
    if args.dir:
        enumerator = RemoteFileEnumerator(
            protocol,
            listing_path=os.path.join(config.OUTPUT_ROOT, LISTING_NAME),
            max_size=config.listing_max_size(),
            exclude_pattern=config.EXCLUDE_PATTERN,
            pause=_pause_for_edit if config.EDIT_LIST else None,
        )
        return enumerator.enumerate(args.dir)
    if args.list:
        return read_path_list(args.list)
    return [args.file]


def run(channel: SerialChannel, args: argparse.Namespace) -> int:
    protocol = FramedTransferProtocol(
        channel,
        remote_tmp_root=config.REMOTE_TMP_ROOT,
        poll_interval=config.POLL_INTERVAL,
        stable_polls=config.STABLE_POLLS,
    )
    if config.PROBE_MOUNT or config.REMOUNT_COMMAND:
        MountWritabilityProbe(
            protocol,
            config.mount_point(),
            remediation_command=config.REMOUNT_COMMAND,
            confirm=_confirm_remediation,
        ).ensure_writable()

    paths = collect_paths(protocol, args)
    try:
        requests = requests_for_paths(paths, config.OUTPUT_ROOT, config.MAX_SIZE)
    except ValueError as exc:
        log_error(str(exc))
        return 2

    outcomes = TransferOrchestrator(protocol).run(requests)
    counts = summarize(outcomes)
    log_info("finished: " + ", ".join(f"{kind}={count}" for kind, count in counts.items() if count))
    return 0 if all(outcome.ok for outcome in outcomes) else 1


def main(argv: Optional[List[str]] = None) -> int:
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)
    apply_args(args)
    validate(parser, args)

    os.makedirs(config.OUTPUT_ROOT, exist_ok=True)
    set_run_log(config.RUN_LOG_PATH or os.path.join(config.OUTPUT_ROOT, RUN_LOG_NAME))

    try:
        channel = create_channel(config)
    except ValueError as exc:
        parser.error(str(exc))

    atexit.register(channel.shutdown)
    signal.signal(signal.SIGTERM, _raise_interrupt)

    log_info(
        f"serialgrab started: backend={config.BACKEND} port={config.PORT} "
        f"output={config.OUTPUT_ROOT} max_size={config.MAX_SIZE}"
    )
    try:
        return run(channel, args)
    except FatalError as exc:
        log_error(f"fatal {exc.kind}: {exc.message}")
        return 2
    except KeyboardInterrupt:
        log_error("interrupted, closing console session")
        return 130
    finally:
        channel.shutdown()


if __name__ == "__main__":
    sys.exit(main())
