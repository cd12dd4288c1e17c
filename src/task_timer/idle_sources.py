"""Platform readers for the time since the last keyboard or pointer input."""

from __future__ import annotations

import asyncio
import ctypes
import ctypes.util
import logging
import shutil
import subprocess
import sys
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

MAX_SANE_IDLE_MS = 24 * 60 * 60 * 1000

IdleSource = Callable[[], Awaitable[int]]


class IdleSourceUnavailable(RuntimeError):
    """Raised when no idle reader exists for this platform."""


class WindowsIdleProbe:
    """Reads idle time using Win32 APIs."""

    class LASTINPUTINFO(ctypes.Structure):
        _fields_ = [("cbSize", ctypes.c_uint), ("dwTime", ctypes.c_uint32)]

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]

    def milliseconds_since_input(self) -> int:
        last_input = self.LASTINPUTINFO()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()  # type: ignore[attr-defined]
        # dwTime wraps with the 32-bit tick counter.
        now = self._kernel32.GetTickCount() & 0xFFFFFFFF
        return int((now - last_input.dwTime) & 0xFFFFFFFF)


class MacIdleProbe:
    """Reads idle time from CoreGraphics' combined session event source."""

    _ANY_INPUT_EVENT = 0xFFFFFFFF
    _COMBINED_SESSION_STATE = 0

    def __init__(self) -> None:
        library = ctypes.util.find_library("CoreGraphics")
        if not library:
            raise IdleSourceUnavailable("CoreGraphics framework not found")
        core_graphics = ctypes.cdll.LoadLibrary(library)
        self._fn = core_graphics.CGEventSourceSecondsSinceLastEventType
        self._fn.restype = ctypes.c_double
        self._fn.argtypes = [ctypes.c_int32, ctypes.c_uint32]

    def milliseconds_since_input(self) -> int:
        seconds = self._fn(self._COMBINED_SESSION_STATE, self._ANY_INPUT_EVENT)
        return int(seconds * 1000)


class XPrintIdleProbe:
    """Reads idle time on X11 through the ``xprintidle`` helper."""

    def __init__(self, executable: Optional[str] = None) -> None:
        resolved = executable or shutil.which("xprintidle")
        if not resolved:
            raise IdleSourceUnavailable("xprintidle is not installed")
        self._executable = resolved

    def milliseconds_since_input(self) -> int:
        result = subprocess.run(
            [self._executable], capture_output=True, text=True, timeout=2, check=True
        )
        return int(result.stdout.strip())


def create_probe():
    if sys.platform == "win32":
        return WindowsIdleProbe()
    if sys.platform == "darwin":
        return MacIdleProbe()
    return XPrintIdleProbe()


def system_idle_source(probe=None) -> IdleSource:
    """Wrap a blocking probe into an async idle source.

    Readings outside [0, 24h] are reported as 0 with a warning.
    """
    resolved = probe or create_probe()

    async def read_idle_ms() -> int:
        idle_ms = await asyncio.to_thread(resolved.milliseconds_since_input)
        if idle_ms < 0 or idle_ms > MAX_SANE_IDLE_MS:
            logger.warning("Abnormal idle time detected: %sms", idle_ms)
            return 0
        return idle_ms

    return read_idle_ms
