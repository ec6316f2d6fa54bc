import os
import sys
import json
import threading
from datetime import datetime
from typing import Any, Dict, Optional
from serialgrab.config import ANSI_ESCAPE, CONTROL_CHARS, WHITESPACE

_log_lock = threading.Lock()
_run_log_path: Optional[str] = None

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def set_run_log(path: Optional[str]) -> None:
    global _run_log_path
    if path:
        parent = os.path.dirname(os.path.abspath(path))
        os.makedirs(parent, exist_ok=True)
    _run_log_path = path

def _emit(level: str, message: str) -> None:
    print(f"[serialgrab] {message}", file=sys.stderr, flush=True)
    if not _run_log_path:
        return
    with _log_lock:
        try:
            with open(_run_log_path, "a", encoding="utf-8") as handle:
                handle.write(f"{iso_now()} {level:<5} {message}\n")
        except OSError as exc:
            print(f"[serialgrab] run log write failed ({_run_log_path}): {exc}", file=sys.stderr, flush=True)

def log_info(message: str) -> None:
    _emit("INFO", message)

def log_warning(message: str) -> None:
    _emit("WARN", message)

def log_error(message: str) -> None:
    _emit("ERROR", message)

def json_line(path: Optional[str], payload: Dict[str, Any]) -> None:
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"transcript write failed ({path}): {exc}")

def mirror_path(output_root: str, remote_path: str) -> str:
    """Local path under ``output_root`` mirroring an absolute remote path."""
    root = os.path.abspath(output_root)
    relative = os.path.normpath(remote_path.lstrip("/"))
    if relative in ("", ".") or relative.startswith(".."):
        raise ValueError(f"remote path does not name a file: {remote_path!r}")
    local = os.path.join(root, relative)
    if os.path.commonpath([root, local]) != root:
        raise ValueError(f"remote path escapes output root: {remote_path!r}")
    return local

def normalize_output(raw: bytes) -> str:
    """Captured console bytes with escapes, control characters and all whitespace removed."""
    if not raw:
        return ""
    text = raw.decode("latin-1")
    text = ANSI_ESCAPE.sub("", text)
    text = CONTROL_CHARS.sub("", text)
    return WHITESPACE.sub("", text)
