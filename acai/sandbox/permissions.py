"""Process permission capabilities for the code interpreter.

An InterpreterPermissions turns a script path into the argv that runs it
under some restriction. The default, AuditHookPermissions, starts an isolated
CPython (-I) whose first act is installing a PEP 578 audit hook. The hook is
permanent for the life of the process: it grants file reads inside the
working root and the interpreter's own installation, file writes inside the
working root only, and refuses network access, process creation, signals and
foreign-library loading.

This is containment by interpreter policy, not by the kernel.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Protocol


class InterpreterPermissions(Protocol):
    def command_for(self, script: Path, *, root: Path) -> list[str]: ...


_BOOTSTRAP = r"""
import os
import sys
import runpy

_ROOT = os.path.realpath(sys.argv[1])
_SCRIPT = sys.argv[2]
_READ_ROOTS = tuple(
    {os.path.realpath(p) for p in (sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix)}
) + (_ROOT,)
_READ_FILES = frozenset({"/dev/null", "/dev/urandom", "/dev/random"})
_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_APPEND | os.O_TRUNC

_DENIED = frozenset({
    "socket.bind", "socket.connect", "socket.getaddrinfo", "socket.gethostbyaddr",
    "socket.gethostbyname", "socket.sendmsg", "socket.sendto",
    "subprocess.Popen", "os.system", "os.exec", "os.posix_spawn", "os.spawn",
    "os.fork", "os.forkpty", "os.kill", "os.killpg", "os.startfile",
    "ctypes.dlopen", "ctypes.dlsym", "ctypes.call_function",
})

# event name -> positions of path arguments that are written
_MUTATING = {
    "os.remove": (0,), "os.rmdir": (0,), "os.mkdir": (0,), "os.chmod": (0,),
    "os.chown": (0,), "os.truncate": (0,), "os.utime": (0,), "os.chflags": (0,),
    "os.rename": (0, 1), "os.link": (0, 1), "os.symlink": (1,),
    "shutil.rmtree": (0,), "shutil.copyfile": (1,),
}
_READING = {"os.listdir": (0,), "os.scandir": (0,), "os.chdir": (0,), "shutil.copyfile": (0,)}


def _inside(path, roots):
    for root in roots:
        if path == root or path.startswith(root.rstrip(os.sep) + os.sep):
            return True
    return False


def _real(path):
    if isinstance(path, bytes):
        path = os.fsdecode(path)
    return os.path.realpath(os.path.join(os.getcwd(), os.fspath(path)))


def _check(event, path, write):
    if path is None or isinstance(path, int):
        return
    real = _real(path)
    if write:
        if not _inside(real, (_ROOT,)):
            raise PermissionError(f"{event}: write access to {real} denied by sandbox")
    elif real not in _READ_FILES and not _inside(real, _READ_ROOTS):
        raise PermissionError(f"{event}: read access to {real} denied by sandbox")


def _hook(event, args):
    if event in _DENIED:
        raise PermissionError(f"{event} denied by sandbox")
    if event == "open":
        path, mode, flags = args
        if mode is None:
            write = bool(flags & _WRITE_FLAGS)
        else:
            write = any(c in mode for c in "wax+")
        _check(event, path, write)
        return
    for pos in _MUTATING.get(event, ()):
        if pos < len(args):
            _check(event, args[pos], True)
    for pos in _READING.get(event, ()):
        if pos < len(args):
            _check(event, args[pos], False)


sys.dont_write_bytecode = True
sys.addaudithook(_hook)
sys.argv = [_SCRIPT]
runpy.run_path(_SCRIPT, run_name="__main__")
"""


class AuditHookPermissions:
    """Read/write only inside the root; no network, no child processes, no FFI."""

    def __init__(self, interpreter: str | None = None) -> None:
        self._interpreter = interpreter or sys.executable

    def command_for(self, script: Path, *, root: Path) -> list[str]:
        return [self._interpreter, "-I", "-c", _BOOTSTRAP, str(root), str(script)]
