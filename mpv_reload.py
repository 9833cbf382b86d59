#!/usr/bin/env python3
import argparse
import enum
import json
import logging
import math
import os
import queue
import select
import signal
import socket
import subprocess
import sys
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Callable, Deque, Dict, List, Optional, Tuple

import requests


def default_ipc_path() -> str:
    return os.path.join(tempfile.gettempdir(), "mpv-reload.sock")


MIN_TIMER_INTERVAL_SEC = 0.05
# float accumulation of intervals such as 0.1 must still reach the timeout
TIME_EPSILON = 1e-9
RELOAD_MESSAGE = "reload-resume"

DEFAULT_CONFIG = {
    "paused_for_cache_timer_enabled": True,
    "paused_for_cache_timer_interval": 1,
    "paused_for_cache_timer_timeout": 10,
    "demuxer_cache_timer_enabled": True,
    "demuxer_cache_timer_interval": 2,
    "demuxer_cache_timer_timeout": 20,
    "reload_eof_enabled": False,
    "reload_key_binding": "Ctrl+r",
    "ipc_path": default_ipc_path(),
    "mpv_path": "mpv",
    "mpv_args": [],
    "log_level": "info",
    "log_file": "",
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "reload_webhook_url": "",
    "reload_webhook_timeout_sec": 10,
    "station_id": "",
    "status_file": "",
    "status_interval_sec": 5,
}

DEBUG_PROPERTIES = (
    "path",
    "time-pos",
    "paused-for-cache",
    "stream-path",
    "stream-pos",
    "stream-end",
    "duration",
    "seekable",
)


def parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in {"yes", "true", "1", "on"}:
        return True
    if text in {"no", "false", "0", "off", ""}:
        return False
    raise ValueError(f"Not a boolean: {value!r}")


def is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def number_or_none(value: object) -> Optional[float]:
    if is_number(value):
        return float(value)
    return None


def parse_script_opts(text: str) -> Dict:
    """Parse an mpv script-opts style file (``key=value`` per line)."""
    data: Dict[str, object] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            logging.warning("Ignoring config line %d without '=': %s", lineno, line)
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        default = DEFAULT_CONFIG.get(key)
        if isinstance(default, bool):
            data[key] = parse_bool(value)
        elif isinstance(default, (int, float)):
            try:
                data[key] = float(value)
            except ValueError:
                raise ValueError(f"Invalid number for {key} on line {lineno}: {value!r}") from None
        elif isinstance(default, list):
            data[key] = value.split()
        else:
            data[key] = value
    return data


def load_config(path: str) -> Dict:
    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(abs_path, "r", encoding="utf-8") as fh:
        if abs_path.endswith(".json"):
            data = json.load(fh)
        elif abs_path.endswith(".conf"):
            data = parse_script_opts(fh.read())
        else:
            raise ValueError(f"Unsupported config format (expected .json or .conf): {path}")
    if not isinstance(data, dict):
        raise ValueError(f"Config must be an object: {path}")
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(data)
    if not cfg.get("ipc_path"):
        cfg["ipc_path"] = default_ipc_path()
    config_dir = os.path.dirname(abs_path)
    for key in ("log_file", "status_file", "ipc_path"):
        value = cfg.get(key)
        if isinstance(value, str) and value:
            cfg[key] = resolve_path_from_base(config_dir, value)
    return cfg


def resolve_path_from_base(base_dir: str, value: str) -> str:
    if not value:
        return value
    if os.path.isabs(value):
        return os.path.normpath(value)
    return os.path.normpath(os.path.join(base_dir, value))


def timer_interval(cfg: Dict, key: str) -> float:
    value = float(cfg.get(key, DEFAULT_CONFIG[key]))
    if value < MIN_TIMER_INTERVAL_SEC:
        logging.warning(
            "%s=%s is below the %.2fs minimum; using %.2fs",
            key,
            value,
            MIN_TIMER_INTERVAL_SEC,
            MIN_TIMER_INTERVAL_SEC,
        )
        return MIN_TIMER_INTERVAL_SEC
    return value


def positive_seconds(cfg: Dict, key: str) -> float:
    value = float(cfg.get(key, DEFAULT_CONFIG[key]))
    if value <= 0:
        logging.warning("%s=%s must be positive; using %s", key, value, DEFAULT_CONFIG[key])
        return float(DEFAULT_CONFIG[key])
    return value


@dataclass(frozen=True)
class Settings:
    paused_for_cache_timer_enabled: bool
    paused_for_cache_timer_interval: float
    paused_for_cache_timer_timeout: float
    demuxer_cache_timer_enabled: bool
    demuxer_cache_timer_interval: float
    demuxer_cache_timer_timeout: float
    reload_eof_enabled: bool
    reload_key_binding: str
    reload_webhook_url: str = ""
    reload_webhook_timeout_sec: float = 10.0
    station_id: str = ""
    status_file: str = ""
    status_interval_sec: float = 5.0

    @classmethod
    def from_config(cls, cfg: Dict) -> "Settings":
        return cls(
            paused_for_cache_timer_enabled=parse_bool(cfg.get("paused_for_cache_timer_enabled", True)),
            paused_for_cache_timer_interval=timer_interval(cfg, "paused_for_cache_timer_interval"),
            paused_for_cache_timer_timeout=positive_seconds(cfg, "paused_for_cache_timer_timeout"),
            demuxer_cache_timer_enabled=parse_bool(cfg.get("demuxer_cache_timer_enabled", True)),
            demuxer_cache_timer_interval=timer_interval(cfg, "demuxer_cache_timer_interval"),
            demuxer_cache_timer_timeout=positive_seconds(cfg, "demuxer_cache_timer_timeout"),
            reload_eof_enabled=parse_bool(cfg.get("reload_eof_enabled", False)),
            reload_key_binding=str(cfg.get("reload_key_binding") or "").strip(),
            reload_webhook_url=str(cfg.get("reload_webhook_url") or "").strip(),
            reload_webhook_timeout_sec=positive_seconds(cfg, "reload_webhook_timeout_sec"),
            station_id=str(cfg.get("station_id") or ""),
            status_file=str(cfg.get("status_file") or ""),
            status_interval_sec=timer_interval(cfg, "status_interval_sec"),
        )


def setup_logging(cfg: Dict) -> None:
    level = getattr(logging, str(cfg.get("log_level") or "info").upper(), None)
    if not isinstance(level, int):
        level = logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = cfg.get("log_file")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.get("log_max_bytes") or 0),
                backupCount=int(cfg.get("log_backup_count") or 0),
            )
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def client_timestamp_ms() -> int:
    return int(time.time() * 1000)


def write_json_file(path: str, data: Dict) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


class PeriodicTimer:
    def __init__(self, interval: float, callback: Callable[[], None], now: float) -> None:
        self.interval = interval
        self.callback = callback
        self.next_due = now + interval
        self._active = True

    def kill(self) -> None:
        self._active = False

    def is_active(self) -> bool:
        return self._active


class PlaybackHost:
    """What the watchdog needs from a media player.

    Implementations deliver every timer tick and property/event callback on a
    single control thread, one at a time and each to completion.
    """

    def get_property(self, name: str) -> Optional[object]:
        raise NotImplementedError

    def set_property(self, name: str, value: object) -> bool:
        raise NotImplementedError

    def observe_property(self, name: str, callback: Callable[[str, object], None]) -> None:
        raise NotImplementedError

    def register_event(self, name: str, callback: Callable[[Dict], None]) -> None:
        raise NotImplementedError

    def add_periodic_timer(self, interval: float, callback: Callable[[], None]) -> PeriodicTimer:
        raise NotImplementedError

    def add_key_binding(self, key: str, name: str, callback: Callable[[], None]) -> None:
        raise NotImplementedError

    def load_file(self, path: str, start: Optional[float] = None) -> bool:
        """Replace the current item (and the playlist) with ``path``."""
        raise NotImplementedError

    def append_file(self, path: str) -> bool:
        raise NotImplementedError

    def playlist_move(self, index1: int, index2: int) -> bool:
        """Move entry ``index1`` so it lands before the entry now at ``index2``."""
        raise NotImplementedError


def build_mpv_args(cfg: Dict, media: List[str]) -> List[str]:
    args = [cfg["mpv_path"], f"--input-ipc-server={cfg['ipc_path']}"]
    extra = cfg.get("mpv_args") or []
    if isinstance(extra, str):
        extra = extra.split()
    args.extend(str(arg) for arg in extra)
    args.extend(media)
    return args


class MPVHost(PlaybackHost):
    def __init__(self, cfg: Dict, sock: Optional[socket.socket] = None) -> None:
        self._cfg = cfg
        self._proc: Optional[subprocess.Popen] = None
        self._ipc: Optional[socket.socket] = sock
        self._closed = False
        self._request_id = 0
        self._recv_buffer = b""
        self._pending_events: Deque[Dict] = deque()
        self._timers: List[PeriodicTimer] = []
        self._observer_id = 0
        self._observers: Dict[int, Tuple[str, Callable[[str, object], None]]] = {}
        self._event_handlers: Dict[str, List[Callable[[Dict], None]]] = {}
        self._messages: Dict[str, Callable[[], None]] = {}

    def _cleanup_ipc_path(self) -> None:
        ipc_path = self._cfg["ipc_path"]
        if os.path.exists(ipc_path):
            try:
                os.remove(ipc_path)
            except OSError:
                pass

    def connect(self, timeout: float = 10.0) -> bool:
        ipc_path = self._cfg["ipc_path"]
        start = time.monotonic()
        while time.monotonic() - start < timeout:
            if self._proc is not None and self._proc.poll() is not None:
                return False
            try:
                if os.path.exists(ipc_path):
                    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                    sock.connect(ipc_path)
                    self._ipc = sock
                    self._closed = False
                    logging.info("Connected to mpv IPC at %s", ipc_path)
                    return True
            except OSError:
                pass
            time.sleep(0.2)
        return False

    def launch(self, media: List[str]) -> bool:
        self._cleanup_ipc_path()
        args = build_mpv_args(self._cfg, media)
        try:
            self._proc = subprocess.Popen(
                args,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            self._proc = None
            logging.error("Failed to start mpv: %s", exc)
            return False
        if self.connect():
            return True
        logging.warning("mpv IPC not available after launch")
        self.stop()
        return False

    def _close_ipc(self) -> None:
        if self._ipc is None:
            return
        try:
            self._ipc.close()
        except OSError:
            pass
        finally:
            self._ipc = None
            self._closed = True
            self._recv_buffer = b""

    def stop(self) -> None:
        self._close_ipc()
        if self._proc is None:
            return
        if self._proc.poll() is None:
            try:
                os.killpg(self._proc.pid, signal.SIGTERM)
                self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                try:
                    os.killpg(self._proc.pid, signal.SIGKILL)
                except OSError:
                    pass
            except OSError:
                pass
        self._proc = None
        self._cleanup_ipc_path()

    def is_connected(self) -> bool:
        return self._ipc is not None and not self._closed

    def _fill_buffer(self, timeout: float) -> bool:
        if self._ipc is None:
            return False
        try:
            readable, _, _ = select.select([self._ipc], [], [], max(timeout, 0.0))
            if not readable:
                return True
            chunk = self._ipc.recv(4096)
        except OSError as exc:
            logging.warning("mpv IPC read failed: %s", exc)
            chunk = b""
        if not chunk:
            logging.info("mpv IPC connection closed")
            self._closed = True
            return False
        self._recv_buffer += chunk
        return True

    def _next_message(self) -> Optional[Dict]:
        while b"\n" in self._recv_buffer:
            line, self._recv_buffer = self._recv_buffer.split(b"\n", 1)
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line.decode("utf-8", errors="ignore"))
            except ValueError:
                logging.debug("Ignoring unparseable IPC line: %r", line)
                continue
            if isinstance(payload, dict):
                return payload
        return None

    def _collect_events(self) -> None:
        while True:
            message = self._next_message()
            if message is None:
                return
            if "event" in message:
                self._pending_events.append(message)

    def _recv_response(self, request_id: int, timeout: float) -> Optional[Dict]:
        deadline = time.monotonic() + max(timeout, 0.1)
        while True:
            message = self._next_message()
            if message is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self._fill_buffer(remaining):
                    return None
                continue
            if "event" in message:
                self._pending_events.append(message)
            elif message.get("request_id") == request_id:
                return message

    def _send(self, command: object, timeout: float = 2.0) -> Optional[Dict]:
        if not self.is_connected():
            return None
        self._request_id += 1
        request_id = self._request_id
        data = (json.dumps({"command": command, "request_id": request_id}) + "\n").encode("utf-8")
        try:
            self._ipc.sendall(data)
        except OSError as exc:
            logging.warning("mpv IPC send failed: %s", exc)
            self._closed = True
            return None
        return self._recv_response(request_id, timeout)

    def _command_ok(self, command: object) -> bool:
        payload = self._send(command)
        if isinstance(payload, dict) and payload.get("error") == "success":
            return True
        logging.debug("mpv command %s failed: %s", command, payload)
        return False

    def get_property(self, name: str, timeout: float = 2.0) -> Optional[object]:
        payload = self._send(["get_property", name], timeout=timeout)
        if isinstance(payload, dict) and payload.get("error") == "success":
            return payload.get("data")
        return None

    def set_property(self, name: str, value: object) -> bool:
        return self._command_ok(["set_property", name, value])

    def observe_property(self, name: str, callback: Callable[[str, object], None]) -> None:
        self._observer_id += 1
        self._observers[self._observer_id] = (name, callback)
        if not self._command_ok(["observe_property", self._observer_id, name]):
            logging.warning("Could not observe mpv property %s", name)

    def register_event(self, name: str, callback: Callable[[Dict], None]) -> None:
        self._event_handlers.setdefault(name, []).append(callback)

    def add_periodic_timer(self, interval: float, callback: Callable[[], None]) -> PeriodicTimer:
        timer = PeriodicTimer(interval, callback, time.monotonic())
        self._timers.append(timer)
        return timer

    def add_key_binding(self, key: str, name: str, callback: Callable[[], None]) -> None:
        self._messages[name] = callback
        if not self._command_ok(["keybind", key, f"script-message {name}"]):
            logging.warning(
                "mpv rejected key binding %s; send 'script-message %s' to trigger it instead",
                key,
                name,
            )

    def load_file(self, path: str, start: Optional[float] = None) -> bool:
        if start is None:
            return self._command_ok(["loadfile", path, "replace"])
        return self._command_ok(
            {"name": "loadfile", "url": path, "flags": "replace", "options": f"start=+{start}"}
        )

    def append_file(self, path: str) -> bool:
        return self._command_ok(["loadfile", path, "append"])

    def playlist_move(self, index1: int, index2: int) -> bool:
        return self._command_ok(["playlist-move", index1, index2])

    def dispatch_pending(self) -> None:
        while self._pending_events:
            self._dispatch(self._pending_events.popleft())

    def _dispatch(self, event: Dict) -> None:
        name = event.get("event")
        try:
            if name == "property-change":
                observer = self._observers.get(event.get("id"))
                if observer is not None:
                    observer[1](observer[0], event.get("data"))
            elif name == "client-message":
                args = event.get("args") or []
                callback = self._messages.get(args[0]) if args else None
                if callback is not None:
                    callback()
            elif name == "shutdown":
                self._closed = True
            for handler in list(self._event_handlers.get(str(name), [])):
                handler(event)
        except Exception:
            logging.exception("Handler for mpv event %s failed", name)

    def _fire_due_timers(self) -> None:
        now = time.monotonic()
        for timer in list(self._timers):
            if not timer.is_active() or timer.next_due > now:
                continue
            timer.next_due += timer.interval
            if timer.next_due <= now:
                timer.next_due = now + timer.interval
            try:
                timer.callback()
            except Exception:
                logging.exception("Timer callback failed")
        self._timers = [timer for timer in self._timers if timer.is_active()]

    def _poll_timeout(self) -> float:
        now = time.monotonic()
        wait = 0.2
        for timer in self._timers:
            if timer.is_active():
                wait = min(wait, timer.next_due - now)
        return max(wait, 0.0)

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set() and self.is_connected():
            self._fire_due_timers()
            self._collect_events()
            self.dispatch_pending()
            if not self.is_connected():
                break
            self._fill_buffer(self._poll_timeout())


class CachePhase(enum.Enum):
    FETCHING = "fetching"
    STALE = "stale"
    STUCK = "stuck"


class IllegalTransition(Exception):
    pass


def next_phase(
    phase: CachePhase,
    progressed: bool,
    time_in_phase: float,
    interval: float,
    timeout: float,
) -> CachePhase:
    if progressed:
        return CachePhase.FETCHING
    if phase is CachePhase.FETCHING:
        return CachePhase.STALE
    if phase is CachePhase.STALE:
        if time_in_phase + interval >= timeout - TIME_EPSILON:
            return CachePhase.STUCK
        return CachePhase.STALE
    return CachePhase.STUCK


@dataclass
class DemuxerCacheState:
    phase: CachePhase = CachePhase.FETCHING
    last_cache_time: Optional[float] = None
    time_in_phase: float = 0.0

    def transition(self, from_phase: CachePhase, to_phase: CachePhase, interval: float) -> None:
        if from_phase is not self.phase:
            raise IllegalTransition(
                f"{from_phase.value} -> {to_phase.value} requested while {self.phase.value}"
            )
        if to_phase is from_phase:
            self.time_in_phase += interval
        else:
            self.phase = to_phase
            self.time_in_phase = 0.0


class DemuxerCacheWatchdog:
    """Classifies demuxer cache progress as fetching, stale or stuck.

    Polls ``demuxer-cache-time`` every ``interval`` seconds. Any change of the
    value, including a drop, counts as progress. After ``timeout`` seconds
    spent stale the cache is declared stuck; the pause watchdog reloads as
    soon as playback then pauses for cache.
    """

    def __init__(self, host: PlaybackHost, interval: float, timeout: float) -> None:
        self._host = host
        self.interval = interval
        self.timeout = timeout
        self.state = DemuxerCacheState()
        self._timer: Optional[PeriodicTimer] = None

    @property
    def phase(self) -> CachePhase:
        return self.state.phase

    def start(self) -> None:
        self.reset()
        if self._timer is None:
            self._timer = self._host.add_periodic_timer(self.interval, self._on_timer)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.kill()
            self._timer = None
        self.reset()

    def reset(self) -> None:
        self.state = DemuxerCacheState()

    def _on_timer(self) -> None:
        self.observe(self._host.get_property("demuxer-cache-time"))

    def apply(self, from_phase: CachePhase, to_phase: CachePhase) -> bool:
        try:
            self.state.transition(from_phase, to_phase, self.interval)
        except IllegalTransition as exc:
            logging.error("Illegal demuxer cache transition: %s", exc)
            return False
        return True

    def observe(self, cache_time: object) -> CachePhase:
        if not is_number(cache_time):
            logging.debug("demuxer-cache-time unavailable; skipping tick")
            return self.state.phase
        state = self.state
        value = float(cache_time)
        progressed = state.last_cache_time is None or value != state.last_cache_time
        previous = state.phase
        target = next_phase(previous, progressed, state.time_in_phase, self.interval, self.timeout)
        if self.apply(previous, target):
            state.last_cache_time = value
            if target is CachePhase.STUCK and previous is not CachePhase.STUCK:
                logging.info("demuxer cache has no progress for %.1fs", self.timeout)
            elif target is CachePhase.FETCHING and previous is not CachePhase.FETCHING:
                logging.info("demuxer cache is fetching again")
        logging.debug(
            "demuxer_cache phase=%s time=%s time_in_phase=%.2f",
            state.phase.value,
            state.last_cache_time,
            state.time_in_phase,
        )
        return state.phase


class PauseWatchdog:
    def __init__(
        self,
        host: PlaybackHost,
        interval: float,
        timeout: float,
        cache_watchdog: Optional[DemuxerCacheWatchdog],
        on_reload: Callable[[str], None],
    ) -> None:
        self._host = host
        self.interval = interval
        self.timeout = timeout
        self._cache_watchdog = cache_watchdog
        self._on_reload = on_reload
        self.elapsed = 0.0
        self._timer: Optional[PeriodicTimer] = None

    @property
    def active(self) -> bool:
        return self._timer is not None

    def on_paused_for_cache(self, _name: str, is_paused: object) -> None:
        if is_paused:
            self._enter()
        else:
            self.stop()

    def _enter(self) -> None:
        cache = self._cache_watchdog
        if cache is not None and cache.phase is CachePhase.STUCK:
            logging.info("paused for cache while demuxer cache is stuck; reloading now")
            # the next cache tick must not see the stale phase again
            cache.reset()
            self._on_reload("demuxer_cache_stuck")
            return
        if self._timer is None:
            logging.debug("paused-for-cache timer started")
            self._timer = self._host.add_periodic_timer(self.interval, self._on_tick)

    def _on_tick(self) -> None:
        self.elapsed += self.interval
        logging.debug("paused for cache %.2fs", self.elapsed)
        if self.elapsed >= self.timeout - TIME_EPSILON:
            logging.info("paused for cache for %.1fs; reloading", self.elapsed)
            self.stop()
            self._on_reload("paused_for_cache_timeout")

    def stop(self) -> None:
        if self._timer is not None:
            logging.debug("paused-for-cache timer stopped after %.2fs", self.elapsed)
            self._timer.kill()
            self._timer = None
        self.elapsed = 0.0


class EOFPlateauDetector:
    """Decides whether end-of-file means the end, or a stall at the live edge.

    Each distinct EOF position gets one reload; reaching EOF again at the same
    whole second means nothing new arrived and playback is over.
    """

    def __init__(
        self,
        host: PlaybackHost,
        on_reload: Callable[[str], None],
        on_ended: Callable[[], None],
    ) -> None:
        self._host = host
        self._on_reload = on_reload
        self._on_ended = on_ended
        self.last_time_pos: Optional[int] = None

    def on_eof_reached(self, _name: str, eof_reached: object) -> None:
        if not eof_reached:
            return
        time_pos = self._host.get_property("time-pos")
        duration = self._host.get_property("duration")
        if not is_number(time_pos) or not is_number(duration):
            logging.debug("eof-reached without time-pos/duration; ignoring")
            return
        position = math.floor(time_pos)
        if position != math.floor(duration):
            logging.debug("eof-reached at %s before duration %s; ignoring", time_pos, duration)
            return
        logging.debug("last_time_pos=%s time_pos=%s", self.last_time_pos, time_pos)
        if self.last_time_pos == position:
            logging.info("eof reached, playback ended")
            self._on_ended()
            return
        logging.info("eof reached, checking if more content available")
        self._on_reload("eof")
        self._host.set_property("pause", False)
        self.last_time_pos = position


@dataclass(frozen=True)
class PlaybackSnapshot:
    path: Optional[str]
    time_pos: Optional[float] = None
    duration: Optional[float] = None
    playlist: Tuple[str, ...] = ()
    playlist_pos: int = -1

    @property
    def is_live(self) -> bool:
        return not (self.duration is not None and self.duration > 0)

    def entries_before(self) -> Tuple[str, ...]:
        if not 0 <= self.playlist_pos < len(self.playlist):
            return ()
        return self.playlist[: self.playlist_pos]

    def entries_after(self) -> Tuple[str, ...]:
        if not 0 <= self.playlist_pos < len(self.playlist):
            return ()
        return self.playlist[self.playlist_pos + 1 :]


def playlist_filenames(raw: object) -> Tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    names: List[str] = []
    for entry in raw:
        if isinstance(entry, dict):
            entry = entry.get("filename")
        if not isinstance(entry, str):
            return ()
        names.append(entry)
    return tuple(names)


def read_snapshot(host: PlaybackHost, fallback_path: Optional[str] = None) -> PlaybackSnapshot:
    path = host.get_property("path")
    if not isinstance(path, str) or not path:
        path = fallback_path
    playlist = playlist_filenames(host.get_property("playlist"))
    playlist_pos = host.get_property("playlist-pos")
    if not is_number(playlist_pos) or not 0 <= int(playlist_pos) < len(playlist):
        playlist_pos = -1
    return PlaybackSnapshot(
        path=path,
        time_pos=number_or_none(host.get_property("time-pos")),
        duration=number_or_none(host.get_property("duration")),
        playlist=playlist,
        playlist_pos=int(playlist_pos),
    )


def reload_resume(host: PlaybackHost, snapshot: PlaybackSnapshot) -> bool:
    """Reopen ``snapshot.path`` in place and rebuild the playlist around it.

    On-demand media resumes at its time position; live streams reopen at the
    live edge because an offset would be applied against the new connection's
    own clock.
    """
    if not snapshot.path:
        logging.warning("Reload skipped: no path available")
        return False
    start: Optional[float] = None
    if snapshot.is_live:
        logging.info("reloading stream")
    elif snapshot.time_pos is None:
        logging.info("reloading video from the start (time-pos unavailable)")
    else:
        start = snapshot.time_pos
        logging.info("reloading video from %s second", start)

    if not host.load_file(snapshot.path, start=start):
        logging.warning("mpv rejected reload of %s", snapshot.path)
        return False
    before = snapshot.entries_before()
    for entry in before:
        if not host.append_file(entry):
            logging.warning("Playlist restore failed appending %s", entry)
            return False
    if before and not host.playlist_move(0, len(before) + 1):
        logging.warning("Playlist restore failed moving reloaded entry to %d", len(before))
        return False
    for entry in snapshot.entries_after():
        if not host.append_file(entry):
            logging.warning("Playlist restore failed appending %s", entry)
            return False
    return True


def build_reload_payload(settings: Settings, reason: str, snapshot: PlaybackSnapshot) -> Dict:
    payload: Dict[str, object] = {
        "event": "reload",
        "reason": reason,
        "path": snapshot.path,
        "timePos": snapshot.time_pos,
        "duration": snapshot.duration,
        "live": snapshot.is_live,
        "clientTimestamp": client_timestamp_ms(),
    }
    if settings.station_id:
        payload["stationId"] = settings.station_id
    return payload


def send_reload_event(settings: Settings, payload: Dict) -> bool:
    url = settings.reload_webhook_url
    if not url:
        return False
    try:
        response = requests.post(url, json=payload, timeout=settings.reload_webhook_timeout_sec)
        response.raise_for_status()
        return True
    except Exception as exc:
        logging.warning("Reload notification failed: %s", exc)
        return False


class ReloadNotifier:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._queue: "queue.Queue[Optional[Dict]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if not self._settings.reload_webhook_url or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def notify(self, payload: Dict) -> None:
        if self._thread is not None:
            self._queue.put(payload)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=5)
        self._thread = None

    def _run(self) -> None:
        while True:
            payload = self._queue.get()
            if payload is None:
                return
            send_reload_event(self._settings, payload)


@dataclass
class WatchdogSession:
    """Per-item watchdog state, alive while one path is playing.

    Reloading the same path keeps the session so the EOF baseline survives
    the reload; a different path gets a fresh session.
    """

    host: PlaybackHost
    settings: Settings
    path: Optional[str]
    on_reloaded: Callable[[str, PlaybackSnapshot], None]
    on_ended: Callable[[], None]
    reload_count: int = 0
    last_reload_reason: Optional[str] = None
    last_reload_at: Optional[str] = None
    cache_watchdog: Optional[DemuxerCacheWatchdog] = field(init=False, default=None)
    pause_watchdog: Optional[PauseWatchdog] = field(init=False, default=None)
    eof_detector: Optional[EOFPlateauDetector] = field(init=False, default=None)

    def __post_init__(self) -> None:
        settings = self.settings
        if settings.demuxer_cache_timer_enabled:
            self.cache_watchdog = DemuxerCacheWatchdog(
                self.host,
                settings.demuxer_cache_timer_interval,
                settings.demuxer_cache_timer_timeout,
            )
        if settings.paused_for_cache_timer_enabled:
            self.pause_watchdog = PauseWatchdog(
                self.host,
                settings.paused_for_cache_timer_interval,
                settings.paused_for_cache_timer_timeout,
                self.cache_watchdog,
                self.reload,
            )
        if settings.reload_eof_enabled:
            self.eof_detector = EOFPlateauDetector(self.host, self.reload, self.on_ended)

    def start(self) -> None:
        logging.debug("Watchdog session started for %s", self.path)
        if self.cache_watchdog is not None:
            self.cache_watchdog.start()

    def close(self) -> None:
        logging.debug("Watchdog session closed for %s", self.path)
        if self.cache_watchdog is not None:
            self.cache_watchdog.stop()
        if self.pause_watchdog is not None:
            self.pause_watchdog.stop()

    def reload(self, reason: str) -> bool:
        snapshot = read_snapshot(self.host, self.path)
        logging.debug("reload requested (%s): %s", reason, snapshot)
        if not reload_resume(self.host, snapshot):
            return False
        if self.cache_watchdog is not None:
            self.cache_watchdog.reset()
        self.reload_count += 1
        self.last_reload_reason = reason
        self.last_reload_at = iso_now()
        self.on_reloaded(reason, snapshot)
        return True

    def status(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "cache_phase": self.cache_watchdog.phase.value if self.cache_watchdog else None,
            "cache_time_in_phase": self.cache_watchdog.state.time_in_phase if self.cache_watchdog else None,
            "paused_for_cache_sec": self.pause_watchdog.elapsed if self.pause_watchdog else None,
            "eof_last_time_pos": self.eof_detector.last_time_pos if self.eof_detector else None,
            "reload_count": self.reload_count,
            "last_reload_reason": self.last_reload_reason,
            "last_reload_at": self.last_reload_at,
        }


class ReloadWatchdog:
    def __init__(
        self,
        host: PlaybackHost,
        settings: Settings,
        notifier: Optional[ReloadNotifier] = None,
    ) -> None:
        self._host = host
        self._settings = settings
        self._notifier = notifier
        self.session: Optional[WatchdogSession] = None
        self._keep_open_saved: Optional[Tuple[object, object]] = None
        self._status_timer: Optional[PeriodicTimer] = None
        self._started_at = iso_now()

    def start(self) -> None:
        settings = self._settings
        logging.debug("settings = %s", settings)
        if settings.reload_key_binding:
            self._host.add_key_binding(settings.reload_key_binding, RELOAD_MESSAGE, self.reload_current)
        self._host.register_event("file-loaded", self._on_file_loaded)
        if settings.paused_for_cache_timer_enabled:
            self._host.observe_property("paused-for-cache", self._on_paused_for_cache)
        if settings.reload_eof_enabled:
            self._host.observe_property("vo-configured", self._on_vo_configured)
            self._host.observe_property("eof-reached", self._on_eof_reached)
        if settings.status_file:
            self._status_timer = self._host.add_periodic_timer(
                settings.status_interval_sec, self.write_status
            )
        self._ensure_session()

    def stop(self) -> None:
        if self._status_timer is not None:
            self._status_timer.kill()
            self._status_timer = None
        if self.session is not None:
            self.session.close()
            self.session = None
        self.restore_keep_open()

    def _ensure_session(self) -> Optional[WatchdogSession]:
        path = self._host.get_property("path")
        if not isinstance(path, str) or not path:
            return self.session
        if self.session is not None and self.session.path == path:
            return self.session
        if self.session is not None:
            self.session.close()
        self.session = WatchdogSession(
            self._host,
            self._settings,
            path,
            on_reloaded=self._on_reloaded,
            on_ended=self.restore_keep_open,
        )
        self.session.start()
        return self.session

    def _on_file_loaded(self, event: Dict) -> None:
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            logging.debug("event = %s", event)
            for name in DEBUG_PROPERTIES:
                logging.debug("%s = %s", name, self._host.get_property(name))
        self._ensure_session()

    def _on_paused_for_cache(self, name: str, value: object) -> None:
        if self.session is not None and self.session.pause_watchdog is not None:
            self.session.pause_watchdog.on_paused_for_cache(name, value)

    def _on_eof_reached(self, name: str, value: object) -> None:
        if self.session is not None and self.session.eof_detector is not None:
            self.session.eof_detector.on_eof_reached(name, value)

    def _on_vo_configured(self, name: str, vo_configured: object) -> None:
        logging.debug("%s = %s", name, vo_configured)
        if not vo_configured:
            return
        self._ensure_session()
        if self._keep_open_saved is None:
            self._keep_open_saved = (
                self._host.get_property("keep-open"),
                self._host.get_property("keep-open-pause"),
            )
        self._host.set_property("keep-open", "yes")
        self._host.set_property("keep-open-pause", "no")

    def restore_keep_open(self) -> None:
        if self._keep_open_saved is None:
            return
        keep_open, keep_open_pause = self._keep_open_saved
        self._keep_open_saved = None
        if keep_open is not None:
            self._host.set_property("keep-open", keep_open)
        if keep_open_pause is not None:
            self._host.set_property("keep-open-pause", keep_open_pause)

    def reload_current(self) -> None:
        session = self._ensure_session()
        if session is None:
            logging.info("Manual reload ignored: nothing is playing")
            return
        session.reload("manual")

    def _on_reloaded(self, reason: str, snapshot: PlaybackSnapshot) -> None:
        if self._notifier is not None:
            self._notifier.notify(build_reload_payload(self._settings, reason, snapshot))

    def status_snapshot(self) -> Dict[str, object]:
        data: Dict[str, object] = {"started_at": self._started_at, "updated_at": iso_now()}
        if self.session is not None:
            data.update(self.session.status())
        return data

    def write_status(self) -> None:
        try:
            write_json_file(self._settings.status_file, self.status_snapshot())
        except OSError as exc:
            logging.warning("Failed to write status file %s: %s", self._settings.status_file, exc)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reload stalled mpv streams")
    parser.add_argument("--config", help="Path to a .json or key=value .conf config file")
    parser.add_argument("--ipc-path", help="mpv --input-ipc-server socket path")
    parser.add_argument("--log-level", help="debug, info, warning or error")
    parser.add_argument(
        "--launch",
        nargs="+",
        metavar="MEDIA",
        help="Start mpv with these files/URLs instead of attaching to a running player",
    )
    args = parser.parse_args(argv)

    cfg = load_config(args.config) if args.config else dict(DEFAULT_CONFIG)
    if args.ipc_path:
        cfg["ipc_path"] = os.path.abspath(args.ipc_path)
    if args.log_level:
        cfg["log_level"] = args.log_level
    setup_logging(cfg)
    settings = Settings.from_config(cfg)

    host = MPVHost(cfg)
    connected = host.launch(args.launch) if args.launch else host.connect()
    if not connected:
        logging.error("mpv IPC unavailable at %s", cfg["ipc_path"])
        return 2

    stop_event = threading.Event()

    def _handle(sig, _frame):
        logging.info("Signal %s received, stopping...", sig)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    notifier = ReloadNotifier(settings)
    notifier.start()
    watchdog = ReloadWatchdog(host, settings, notifier)
    try:
        watchdog.start()
        host.run(stop_event)
    finally:
        watchdog.stop()
        notifier.stop()
        host.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
