from __future__ import annotations

import fcntl
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from deadswitch.errors import LockUnavailableError


@dataclass(frozen=True)
class SwitchLock:
    path: str
    pid: int


@dataclass(frozen=True)
class LockDiagnostics:
    lock_path: Path
    lock_dir: Path
    exists: bool
    owner_pid: int | None
    owner_pid_alive: bool


def _read_pid_text(path: Path) -> str | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


def _pid_appears_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def get_lock_diagnostics(lock_path: str | Path) -> LockDiagnostics:
    """Best-effort view of the last lock owner.

    The pid written into the lock file is informational only; it is left in
    place after release, so ``owner_pid_alive`` is the useful signal.
    """
    path = Path(lock_path).expanduser()
    owner_pid_raw = _read_pid_text(path)
    owner_pid = int(owner_pid_raw) if owner_pid_raw and owner_pid_raw.isdigit() else None
    owner_alive = _pid_appears_alive(owner_pid) if owner_pid is not None else False
    return LockDiagnostics(
        lock_path=path,
        lock_dir=path.parent,
        exists=path.exists(),
        owner_pid=owner_pid,
        owner_pid_alive=owner_alive,
    )


def _open_lock_file(path: Path) -> BinaryIO:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o660)
    except OSError as exc:
        raise LockUnavailableError(f"cannot open lock file lock_path={path}: {exc}") from exc
    return os.fdopen(fd, "r+b")


@contextmanager
def switch_lock(lock_path: str | Path, *, blocking: bool = True) -> Iterator[SwitchLock]:
    """Hold the exclusive switch lock for one load-decide-act-save transaction.

    Uses ``flock`` on a dedicated lock file, so it serializes the tick process
    and every web worker on the same host. Acquisition blocks by default; the
    critical sections are short and bounded by local I/O and mail hand-off.
    """

    path = Path(lock_path).expanduser()
    fh = _open_lock_file(path)
    pid = os.getpid()
    lock_acquired = False
    try:
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(fh.fileno(), flags)
            lock_acquired = True
        except OSError as exc:
            diagnostics = get_lock_diagnostics(path)
            owner_text = (
                f" owner_pid={diagnostics.owner_pid} owner_alive={diagnostics.owner_pid_alive}"
                if diagnostics.owner_pid is not None
                else ""
            )
            raise LockUnavailableError(
                f"LOCKED: cannot acquire switch lock lock_path={path}.{owner_text}"
            ) from exc

        try:
            fh.seek(0)
            fh.truncate(0)
            fh.write(f"{pid}\n".encode())
            fh.flush()
        except OSError:
            pass

        yield SwitchLock(path=str(path), pid=pid)
    finally:
        try:
            if lock_acquired:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        except OSError:
            pass
        try:
            fh.close()
        except OSError:
            pass
