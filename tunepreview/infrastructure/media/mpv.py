"""
mpv media backend for tunepreview.

Each open resource is one ``mpv`` process controlled over its JSON IPC socket.
Loading is asynchronous: ``open`` only spawns the process, and the front end's
event loop calls ``poll`` to turn mpv properties into status events.
"""

import itertools
import json
import logging
import os
import socket
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from tunepreview.domain.entities import MediaStatus
from tunepreview.domain.errors import MediaOpenFailed, PlaybackFault
from tunepreview.domain.ports import MediaBackend, StatusCallback
from tunepreview.domain.timefmt import millis_to_seconds, seconds_to_millis

logger = logging.getLogger(__name__)

IPC_TIMEOUT = 2.0

STATUS_PROPERTIES = ('pause', 'time-pos', 'duration', 'paused-for-cache', 'eof-reached')


@dataclass(eq=False)
class MpvHandle:
    """One mpv process bound to one URI. Compared by identity."""

    resource_id: int
    uri: str
    socket_path: str
    process: subprocess.Popen
    on_status: StatusCallback
    pending_pause: Optional[bool] = None
    pending_seek_ms: Optional[int] = None
    finished: bool = False
    failed: bool = False
    closed: bool = False


def send_mpv_command(socket_path: Optional[str], command: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Send one JSON IPC command to mpv and return its reply.

    Event lines mpv interleaves with replies are skipped.

    Returns:
        The reply object, or None when the socket is unavailable or the reply
        cannot be parsed.
    """
    if not socket_path or not os.path.exists(socket_path):
        return None

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(IPC_TIMEOUT)
            sock.connect(socket_path)
            sock.sendall((json.dumps(command) + "\n").encode("utf-8"))
            data = sock.recv(65536).decode("utf-8", errors="replace")
    except (socket.error, OSError) as e:
        logger.debug(f"mpv IPC failed on {socket_path}: {e}")
        return None

    for line in data.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            reply = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(reply, dict) and 'error' in reply:
            return reply
    return None


def get_mpv_property(socket_path: Optional[str], property_name: str) -> Any:
    """Get a property value from mpv, or None when unavailable."""
    reply = send_mpv_command(socket_path, {"command": ["get_property", property_name]})
    if reply and reply.get("error") == "success":
        return reply.get("data")
    return None


class MpvMediaBackend(MediaBackend):
    """MediaBackend implementation driving one mpv process per resource."""

    def __init__(self,
                 mpv_path: str = 'mpv',
                 volume: int = 100,
                 socket_dir: Optional[str] = None):
        """Initialize backend.

        Args:
            mpv_path: mpv executable
            volume: Initial volume (0-100)
            socket_dir: Directory for IPC sockets, defaults to the temp dir
        """
        self.mpv_path = mpv_path
        self.volume = max(0, min(100, int(volume)))
        self._socket_dir = Path(socket_dir) if socket_dir else Path(tempfile.gettempdir())
        self._ids = itertools.count(1)
        self._handles: List[MpvHandle] = []

    @property
    def open_handles(self) -> List[MpvHandle]:
        return [h for h in self._handles if not h.closed]

    def is_available(self) -> bool:
        """Check if mpv is available on the system."""
        try:
            result = subprocess.run(
                [self.mpv_path, "--version"], capture_output=True, text=True, timeout=5
            )
            return result.returncode == 0
        except (subprocess.SubprocessError, FileNotFoundError, OSError):
            return False

    def build_command(self, uri: str, socket_path: str, autoplay: bool) -> List[str]:
        cmd = [
            self.mpv_path,
            "--no-video",
            "--no-terminal",
            "--idle=no",
            "--keep-open=yes",
            "--load-scripts=no",
            f"--input-ipc-server={socket_path}",
            f"--volume={self.volume}",
        ]
        if not autoplay:
            cmd.append("--pause")
        cmd.append(uri)
        return cmd

    def open(self, uri: str, autoplay: bool, on_status: StatusCallback) -> MpvHandle:
        """Spawn an mpv process for ``uri`` and return its handle immediately."""
        if not uri or not uri.strip():
            raise MediaOpenFailed("No media URI to open")

        resource_id = next(self._ids)
        socket_path = str(self._socket_dir / f"tunepreview-mpv-{os.getpid()}-{resource_id}.sock")

        if os.path.exists(socket_path):
            logger.debug(f"Removing existing socket: {socket_path}")
            os.unlink(socket_path)

        cmd = self.build_command(uri, socket_path, autoplay)
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
            )
        except (subprocess.SubprocessError, OSError) as e:
            raise MediaOpenFailed(f"Failed to start mpv: {e}")

        handle = MpvHandle(
            resource_id=resource_id,
            uri=uri,
            socket_path=socket_path,
            process=process,
            on_status=on_status,
        )
        self._handles.append(handle)
        logger.info(f"Started mpv resource {resource_id} for {uri}")
        return handle

    def play(self, handle: MpvHandle) -> None:
        self._ensure_open(handle)
        handle.pending_pause = False
        self._flush_pending(handle)

    def pause(self, handle: MpvHandle) -> None:
        self._ensure_open(handle)
        handle.pending_pause = True
        self._flush_pending(handle)

    def seek(self, handle: MpvHandle, position_ms: int) -> None:
        self._ensure_open(handle)
        handle.pending_seek_ms = max(0, int(position_ms))
        self._flush_pending(handle)

    def close(self, handle: MpvHandle) -> None:
        """Kill the process and remove its socket. Safe to call twice."""
        if handle.closed:
            return
        handle.closed = True

        try:
            handle.process.kill()
            handle.process.wait(timeout=2.0)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"mpv resource {handle.resource_id} did not exit cleanly: {e}")

        if os.path.exists(handle.socket_path):
            try:
                os.unlink(handle.socket_path)
            except OSError:
                logger.debug(f"Could not remove socket {handle.socket_path}")

        if handle in self._handles:
            self._handles.remove(handle)
        logger.info(f"Closed mpv resource {handle.resource_id}")

    def close_all(self) -> None:
        for handle in list(self._handles):
            self.close(handle)

    def poll(self) -> None:
        """Emit one status event per open resource."""
        for handle in list(self._handles):
            if handle.closed:
                continue
            status = self.read_status(handle)
            # An earlier callback in this pass may have closed this handle
            if status is None or handle.closed:
                continue
            handle.on_status(handle, status)

    def read_status(self, handle: MpvHandle) -> Optional[MediaStatus]:
        """Build a status event from mpv state, or None when nothing to report."""
        exit_code = handle.process.poll()
        if exit_code is not None:
            if handle.finished or handle.failed:
                return None
            handle.failed = True
            return MediaStatus(error=f"mpv exited with code {exit_code} while playing {handle.uri}")

        if not os.path.exists(handle.socket_path):
            return MediaStatus(is_loaded=False, is_buffering=True)

        self._flush_pending(handle)

        props = {name: get_mpv_property(handle.socket_path, name) for name in STATUS_PROPERTIES}
        position = props['time-pos']
        duration = props['duration']

        if position is None and duration is None:
            return MediaStatus(is_loaded=False, is_buffering=True)

        position_ms = seconds_to_millis(position) if position is not None else 0
        duration_ms = seconds_to_millis(duration) if duration else None

        if props['eof-reached'] is True:
            if handle.finished:
                return MediaStatus(is_loaded=True, position_ms=position_ms, duration_ms=duration_ms)
            handle.finished = True
            return MediaStatus(
                is_loaded=True,
                position_ms=duration_ms if duration_ms is not None else position_ms,
                duration_ms=duration_ms,
                did_just_finish=True,
            )

        is_buffering = props['paused-for-cache'] is True
        is_playing = props['pause'] is False and not is_buffering

        return MediaStatus(
            is_loaded=True,
            is_playing=is_playing,
            is_buffering=is_buffering,
            position_ms=position_ms,
            duration_ms=duration_ms,
        )

    def _flush_pending(self, handle: MpvHandle) -> None:
        """Send queued transport commands once the IPC socket is up."""
        if handle.pending_pause is not None:
            reply = send_mpv_command(
                handle.socket_path, {"command": ["set_property", "pause", handle.pending_pause]}
            )
            if reply and reply.get("error") == "success":
                handle.pending_pause = None

        if handle.pending_seek_ms is not None:
            reply = send_mpv_command(
                handle.socket_path,
                {"command": ["seek", millis_to_seconds(handle.pending_seek_ms), "absolute"]}
            )
            if reply and reply.get("error") == "success":
                handle.pending_seek_ms = None

    def _ensure_open(self, handle: MpvHandle) -> None:
        if handle.closed:
            raise PlaybackFault(f"mpv resource {handle.resource_id} is closed")
        if handle.process.poll() is not None:
            raise PlaybackFault(f"mpv resource {handle.resource_id} is no longer running")
