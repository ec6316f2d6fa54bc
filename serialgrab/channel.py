import os
import time
import shlex
import shutil
import threading
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import paramiko
import serial

from serialgrab.config import (
    BAUD_RATE, BUFFER_SIZE, READ_TIMEOUT, TERMINATE_GRACE, CONNECT_TIMEOUT,
    KEEPALIVE_INTERVAL, DEFAULT_TERMINAL_COMMAND, RunConfig
)
from serialgrab.errors import TransportFailure
from serialgrab.utils import iso_now, json_line, log_error, log_info


@dataclass
class RemoteSession:
    session_id: int
    command: str
    started_at: float

    lock: threading.Lock = field(default_factory=threading.Lock)
    done_event: threading.Event = field(default_factory=threading.Event)
    stop_event: threading.Event = field(default_factory=threading.Event)
    output_buffer: bytearray = field(default_factory=bytearray)
    handle: Any = None
    status: str = "running"
    finish_reason: str = ""
    error: str = ""
    eof: bool = False
    finished_at: Optional[float] = None
    last_data_at: float = field(default_factory=time.time)

    def append_output(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self.lock:
            self.output_buffer.extend(chunk)
            self.last_data_at = time.time()

    def snapshot(self) -> bytes:
        with self.lock:
            return bytes(self.output_buffer)

    def mark_done(self, status: str, reason: str = "", error: str = "") -> None:
        with self.lock:
            if self.done_event.is_set():
                return
            self.status = status
            self.finish_reason = reason
            self.error = error
            self.finished_at = time.time()
            self.done_event.set()


class SerialChannel(ABC):
    """The single link to the remote console.

    Only one RemoteSession is alive at a time: ``send`` closes the previous
    one before starting the next, and ``close``/``shutdown`` may be called
    any number of times.
    """

    name = "channel"

    def __init__(self, transcript_path: Optional[str] = None):
        self.transcript_path = transcript_path
        self.session: Optional[RemoteSession] = None
        self.reader_thread: Optional[threading.Thread] = None
        self.session_counter = 1
        self.is_open = False
        self.lock = threading.Lock()

    # ----- backend hooks -----
    @abstractmethod
    def _open_link(self) -> None:
        ...

    @abstractmethod
    def _close_link(self) -> None:
        ...

    def _start(self, session: RemoteSession) -> None:
        pass

    @abstractmethod
    def _write(self, session: RemoteSession, data: bytes) -> None:
        ...

    @abstractmethod
    def _read(self, session: RemoteSession) -> Optional[bytes]:
        """Return available bytes, ``b""`` when idle, or None at end of stream."""

    @abstractmethod
    def _terminate(self, session: RemoteSession, interrupt: bool) -> None:
        ...

    # ----- public contract -----
    def open(self) -> None:
        if self.is_open:
            return
        self._open_link()
        self.is_open = True
        log_info(f"{self.name} link open: {self.describe()}")
        self._log("SYS", {"event": "link_open", "target": self.describe()})

    def send(self, command: str) -> RemoteSession:
        self.close()
        if not self.is_open:
            self.open()

        with self.lock:
            session = RemoteSession(
                session_id=self.session_counter,
                command=command,
                started_at=time.time(),
            )
            self.session_counter += 1
            self.session = session

        self._log("IN", {"event": "command_sent", "session_id": session.session_id, "command": command})
        try:
            self._start(session)
            self._write(session, (command + "\n").encode("utf-8"))
        except TransportFailure:
            session.mark_done("failed", reason="send failed")
            raise
        except Exception as exc:
            session.mark_done("failed", reason="send failed", error=str(exc))
            raise TransportFailure(f"failed to send command: {exc}") from exc

        thread = threading.Thread(target=self._reader_loop, args=(session,), daemon=True)
        with self.lock:
            self.reader_thread = thread
        thread.start()
        return session

    def snapshot(self) -> bytes:
        session = self.session
        if session is None:
            return b""
        return session.snapshot()

    def is_finished(self) -> bool:
        session = self.session
        return bool(session and session.eof)

    def mark_done(self, reason: str) -> None:
        session = self.session
        if session is not None:
            session.mark_done("completed", reason=reason)

    def close(self) -> None:
        with self.lock:
            session = self.session
            thread = self.reader_thread
            self.session = None
            self.reader_thread = None
        if session is None:
            return

        interrupt = not session.done_event.is_set()
        session.stop_event.set()
        try:
            self._terminate(session, interrupt)
        except Exception as exc:
            log_error(f"{self.name}: terminating session {session.session_id} failed: {exc}")
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=TERMINATE_GRACE)

        session.mark_done("aborted", reason="closed before completion")
        self._log(
            "SYS",
            {
                "event": "session_closed",
                "session_id": session.session_id,
                "status": session.status,
                "reason": session.finish_reason,
                "interrupted": interrupt,
                "received_bytes": len(session.output_buffer),
            },
        )

    def shutdown(self) -> None:
        self.close()
        if not self.is_open:
            return
        self.is_open = False
        try:
            self._close_link()
        except Exception as exc:
            log_error(f"{self.name}: closing link failed: {exc}")
        self._log("SYS", {"event": "link_closed"})

    def describe(self) -> str:
        return self.name

    def __enter__(self) -> "SerialChannel":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ----- internals -----
    def _reader_loop(self, session: RemoteSession) -> None:
        try:
            while not session.stop_event.is_set():
                chunk = self._read(session)
                if chunk is None:
                    session.eof = True
                    session.mark_done("eof", reason="stream ended")
                    break
                if chunk and not session.stop_event.is_set():
                    session.append_output(chunk)
                    self._log(
                        "OUT",
                        {"session_id": session.session_id, "chunk": chunk.decode("utf-8", errors="replace")},
                    )
        except Exception as exc:
            if not session.stop_event.is_set():
                log_error(f"{self.name}: reader failed in session {session.session_id}: {exc}")
                session.eof = True
                session.mark_done("failed", reason="reader exception", error=str(exc))

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.transcript_path:
            return
        data = {"ts": iso_now(), "dir": direction, "backend": self.name}
        data.update(payload)
        json_line(self.transcript_path, data)


class PySerialChannel(SerialChannel):
    name = "serial"

    def __init__(self, port: str, baud_rate: int = BAUD_RATE, transcript_path: Optional[str] = None):
        super().__init__(transcript_path)
        self.port = port
        self.baud_rate = baud_rate
        self.port_handle: Optional[serial.Serial] = None

    def describe(self) -> str:
        return f"{self.port} @ {self.baud_rate} 8N1"

    def _open_link(self) -> None:
        try:
            self.port_handle = serial.Serial(
                port=self.port,
                baudrate=self.baud_rate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=READ_TIMEOUT,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
        except (serial.SerialException, ValueError) as exc:
            raise TransportFailure(f"cannot open serial port {self.port}: {exc}") from exc

    def _close_link(self) -> None:
        if self.port_handle is not None:
            self.port_handle.close()
        self.port_handle = None

    def _start(self, session: RemoteSession) -> None:
        session.handle = self.port_handle
        self.port_handle.reset_input_buffer()

    def _write(self, session: RemoteSession, data: bytes) -> None:
        session.handle.write(data)
        session.handle.flush()

    def _read(self, session: RemoteSession) -> Optional[bytes]:
        handle = session.handle
        # an idle port reads b"" forever; only a SerialException ends the stream
        return handle.read(handle.in_waiting or 1)

    def _terminate(self, session: RemoteSession, interrupt: bool) -> None:
        if interrupt and session.handle is not None and session.handle.is_open:
            session.handle.write(b"\x03")
            session.handle.flush()


class TerminalProcessChannel(SerialChannel):
    """Drives an external terminal client (picocom by default), one process per session."""

    name = "terminal"

    def __init__(
        self,
        port: str,
        terminal_command: str = DEFAULT_TERMINAL_COMMAND,
        transcript_path: Optional[str] = None,
    ):
        super().__init__(transcript_path)
        self.port = port
        self.terminal_command = terminal_command

    def argv(self) -> List[str]:
        return shlex.split(self.terminal_command.format(port=self.port))

    def describe(self) -> str:
        return " ".join(self.argv())

    def _open_link(self) -> None:
        argv = self.argv()
        if not argv or shutil.which(argv[0]) is None:
            raise TransportFailure(f"terminal client not found: {self.terminal_command!r}")

    def _close_link(self) -> None:
        pass

    def _start(self, session: RemoteSession) -> None:
        try:
            session.handle = subprocess.Popen(
                self.argv(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=0,
            )
        except OSError as exc:
            raise TransportFailure(f"cannot start terminal client: {exc}") from exc

    def _write(self, session: RemoteSession, data: bytes) -> None:
        session.handle.stdin.write(data)
        session.handle.stdin.flush()

    def _read(self, session: RemoteSession) -> Optional[bytes]:
        chunk = os.read(session.handle.stdout.fileno(), BUFFER_SIZE)
        return chunk or None

    def _terminate(self, session: RemoteSession, interrupt: bool) -> None:
        process = session.handle
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=TERMINATE_GRACE)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        for stream in (process.stdin, process.stdout):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError:
                pass


class SSHConsoleChannel(SerialChannel):
    """Runs the terminal client on a console server that owns the serial port."""

    name = "ssh"

    def __init__(
        self,
        host: str,
        user: Optional[str],
        port: str,
        terminal_command: str = DEFAULT_TERMINAL_COMMAND,
        ssh_port: int = 22,
        password: Optional[str] = None,
        key_path: Optional[str] = None,
        verify_host_key: bool = True,
        transcript_path: Optional[str] = None,
    ):
        super().__init__(transcript_path)
        self.host = host
        self.user = user
        self.port = port
        self.terminal_command = terminal_command
        self.ssh_port = ssh_port
        self.password = password
        self.key_path = key_path
        self.verify_host_key = verify_host_key
        self.client: Optional[paramiko.SSHClient] = None

    def remote_command(self) -> str:
        return self.terminal_command.format(port=self.port)

    def describe(self) -> str:
        return f"{self.user}@{self.host}:{self.ssh_port} `{self.remote_command()}`"

    def _open_link(self) -> None:
        try:
            self.client = paramiko.SSHClient()
            if self.verify_host_key:
                self.client.load_system_host_keys()
            else:
                self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            connect_kwargs = {
                "hostname": self.host,
                "port": self.ssh_port,
                "username": self.user,
                "timeout": CONNECT_TIMEOUT,
                "allow_agent": True,
                "look_for_keys": True,
            }
            if self.password:
                connect_kwargs["password"] = self.password
            if self.key_path:
                connect_kwargs["key_filename"] = self.key_path

            self.client.connect(**connect_kwargs)
            transport = self.client.get_transport()
            if transport:
                transport.set_keepalive(KEEPALIVE_INTERVAL)
        except (paramiko.SSHException, OSError) as exc:
            self.client = None
            raise TransportFailure(f"cannot reach console server {self.host}: {exc}") from exc

    def _close_link(self) -> None:
        if self.client is not None:
            self.client.close()
        self.client = None

    def _start(self, session: RemoteSession) -> None:
        transport = self.client.get_transport() if self.client else None
        if not transport or not transport.is_active():
            raise TransportFailure(f"console server {self.host} disconnected")
        try:
            channel = transport.open_session()
            channel.get_pty()
            channel.exec_command(self.remote_command())
        except paramiko.SSHException as exc:
            raise TransportFailure(f"cannot start terminal client on {self.host}: {exc}") from exc
        session.handle = channel

    def _write(self, session: RemoteSession, data: bytes) -> None:
        session.handle.sendall(data)

    def _read(self, session: RemoteSession) -> Optional[bytes]:
        channel = session.handle
        if channel.recv_ready():
            return channel.recv(BUFFER_SIZE) or None
        if channel.closed or channel.exit_status_ready():
            return None
        time.sleep(0.05)
        return b""

    def _terminate(self, session: RemoteSession, interrupt: bool) -> None:
        channel = session.handle
        if channel is None:
            return
        if interrupt and not channel.closed:
            try:
                channel.send(b"\x03")
            except OSError:
                pass
        channel.close()


def create_channel(cfg: RunConfig) -> SerialChannel:
    backend = (cfg.BACKEND or "serial").strip().lower()
    if backend == "serial":
        return PySerialChannel(cfg.PORT, transcript_path=cfg.TRANSCRIPT_PATH)
    if backend == "terminal":
        return TerminalProcessChannel(cfg.PORT, cfg.TERMINAL_COMMAND, transcript_path=cfg.TRANSCRIPT_PATH)
    if backend == "ssh":
        return SSHConsoleChannel(
            host=cfg.SSH_HOST,
            user=cfg.SSH_USER,
            port=cfg.PORT,
            terminal_command=cfg.TERMINAL_COMMAND,
            ssh_port=cfg.SSH_PORT,
            password=cfg.SSH_PASSWORD,
            key_path=cfg.SSH_KEY_PATH,
            verify_host_key=cfg.SSH_VERIFY_HOST_KEY,
            transcript_path=cfg.TRANSCRIPT_PATH,
        )
    raise ValueError(f"unknown backend: {cfg.BACKEND!r} (expected serial, terminal or ssh)")
