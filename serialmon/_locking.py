"""
Cross-process exclusive use of serial devices: UUCP-style lock files
in /var/lock, plus flock() and TIOCEXCL on the open descriptor.
"""

import contextlib
import fcntl
import logging
import os
import termios
import typeguard
from pathlib import Path
from typing import Literal

from serialmon import _exceptions

SharingMode = Literal["oblivious", "polite", "exclusive"]

LOCK_DIR = Path("/var/lock")
LOCK_RETRIES = 10

log = logging.getLogger("serialmon.locking")


def lock_path_for(port: str) -> Path:
    """/dev/ttyUSB0 -> LCK..ttyUSB0, /dev/pts/5 -> LCK..pts.5"""

    parts = Path(port).parts
    if len(parts) >= 2 and parts[-1].isdigit() and parts[-2].startswith("pt"):
        return LOCK_DIR / f"LCK..{parts[-2]}.{parts[-1]}"
    return LOCK_DIR / f"LCK..{parts[-1]}"


@contextlib.contextmanager
@typeguard.typechecked
def using_lock_file(port: str, sharing: SharingMode):
    lock_path = lock_path_for(port)
    claimed = False
    if sharing != "oblivious":
        for _try in range(LOCK_RETRIES):
            claimed = _claim_lock_file(port, lock_path)
            if claimed is not None:
                break
        else:
            message = "Serial port busy (lock file retries exceeded)"
            raise _exceptions.SerialOpenBusy(message, port)

    try:
        yield
    finally:
        if claimed:
            _release_lock_file(lock_path)


@contextlib.contextmanager
@typeguard.typechecked
def using_fd_lock(port: str, fd: int, sharing: SharingMode):
    locked = False
    try:
        if sharing == "polite":
            # Probe for an exclusive holder, then settle for shared
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            fcntl.flock(fd, fcntl.LOCK_UN | fcntl.LOCK_NB)
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
            locked = True
            log.debug("Acquired flock(LOCK_SH) on %s", port)
        elif sharing == "exclusive":
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            locked = True
            log.debug("Acquired flock(LOCK_EX) on %s", port)
    except BlockingIOError as exc:
        message = "Serial port busy (flock claimed)"
        raise _exceptions.SerialOpenBusy(message, port) from exc
    except OSError:
        log.warning("Can't flock %s", port, exc_info=True)

    if sharing == "exclusive":
        try:
            fcntl.ioctl(fd, termios.TIOCEXCL)
            log.debug("Acquired TIOCEXCL on %s", port)
        except OSError:
            log.warning("Can't set TIOCEXCL on %s", port, exc_info=True)

    try:
        yield
    finally:
        if sharing == "exclusive":
            try:
                fcntl.ioctl(fd, termios.TIOCNXCL)
                log.debug("Released TIOCEXCL on %s", port)
            except OSError:
                log.warning("Can't clear TIOCEXCL on %s", port, exc_info=True)
        if locked:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN | fcntl.LOCK_NB)
                log.debug("Released flock on %s", port)
            except OSError:
                log.warning("Can't release flock on %s", port, exc_info=True)


def _claim_lock_file(port: str, lock_path: Path) -> bool | None:
    """True if claimed, False if nothing to claim, None to retry."""

    if not lock_path.parent.is_dir():
        log.debug("No lock directory %s", lock_path.parent)
        return False

    if owner_pid := _lock_file_owner(lock_path):
        if owner_pid == os.getpid():
            log.debug("We already own %s", lock_path)
            return False
        log.debug("PID %d owns %s", owner_pid, lock_path)
        message = f"Serial port busy ({lock_path}: pid={owner_pid})"
        raise _exceptions.SerialOpenBusy(message, port)

    try:
        with lock_path.open("xt") as lock_file:
            lock_file.write(f"{os.getpid():>10d}\n")
    except FileExistsError:
        log.warning("Conflict creating %s", lock_path)
        return None
    except OSError:
        log.warning("Can't create %s", lock_path, exc_info=True)
        return False

    log.debug("Claimed %s", lock_path)
    return True


def _release_lock_file(lock_path: Path) -> None:
    if _lock_file_owner(lock_path) != os.getpid():
        return

    try:
        lock_path.unlink()
        log.debug("Released %s", lock_path)
    except OSError:
        log.warning("Can't release %s", lock_path, exc_info=True)


def _lock_file_owner(lock_path: Path) -> int | None:
    try:
        owner_pid = int(lock_path.read_text()[:128].strip())
    except FileNotFoundError:
        return None
    except ValueError:
        owner_pid = 0
    except OSError:
        log.warning("Can't read %s", lock_path, exc_info=True)
        return None

    try:
        if owner_pid > 0:
            os.kill(owner_pid, 0)  # existence check
            return owner_pid
    except PermissionError:
        return owner_pid  # alive, owned by another user
    except ProcessLookupError:
        pass
    except OSError:
        log.warning("Can't check owner of %s", lock_path, exc_info=True)
        return None

    try:
        lock_path.unlink()
        log.debug("Removed stale %s", lock_path)
    except OSError:
        log.warning("Can't remove %s", lock_path, exc_info=True)
    return None
