from typing import Callable, Dict, List, Optional, Set

from mpv_reload import PlaybackHost, Settings


class FakeTimer:
    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self.active = True

    def kill(self) -> None:
        self.active = False

    def is_active(self) -> bool:
        return self.active


class FakeHost(PlaybackHost):
    def __init__(self, **properties: object) -> None:
        self.properties: Dict[str, object] = dict(properties)
        self.playlist: List[str] = []
        self.playlist_pos = -1
        self.commands: List[tuple] = []
        self.timers: List[FakeTimer] = []
        self.observers: Dict[str, List[Callable[[str, object], None]]] = {}
        self.events: Dict[str, List[Callable[[Dict], None]]] = {}
        self.key_bindings: Dict[str, Callable[[], None]] = {}
        self.fail_commands: Set[str] = set()

    def set_playlist(self, entries: List[str], pos: int) -> None:
        self.playlist = list(entries)
        self.playlist_pos = pos
        self.properties["path"] = entries[pos]

    def get_property(self, name: str) -> Optional[object]:
        if name == "playlist":
            return [
                dict({"filename": entry}, **({"current": True} if idx == self.playlist_pos else {}))
                for idx, entry in enumerate(self.playlist)
            ]
        if name == "playlist-pos":
            return self.playlist_pos
        return self.properties.get(name)

    def set_property(self, name: str, value: object) -> bool:
        self.commands.append(("set", name, value))
        self.properties[name] = value
        return True

    def observe_property(self, name: str, callback: Callable[[str, object], None]) -> None:
        self.observers.setdefault(name, []).append(callback)

    def register_event(self, name: str, callback: Callable[[Dict], None]) -> None:
        self.events.setdefault(name, []).append(callback)

    def add_periodic_timer(self, interval: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(interval, callback)
        self.timers.append(timer)
        return timer

    def add_key_binding(self, key: str, name: str, callback: Callable[[], None]) -> None:
        self.key_bindings[key] = callback

    def load_file(self, path: str, start: Optional[float] = None) -> bool:
        self.commands.append(("loadfile", path, start))
        if "loadfile" in self.fail_commands:
            return False
        self.playlist = [path]
        self.playlist_pos = 0
        self.properties["path"] = path
        return True

    def append_file(self, path: str) -> bool:
        self.commands.append(("append", path))
        if "append" in self.fail_commands:
            return False
        self.playlist.append(path)
        return True

    def playlist_move(self, index1: int, index2: int) -> bool:
        self.commands.append(("move", index1, index2))
        if "move" in self.fail_commands:
            return False
        entry = self.playlist.pop(index1)
        target = index2 - 1 if index2 > index1 else index2
        self.playlist.insert(target, entry)
        if self.playlist_pos == index1:
            self.playlist_pos = target
        return True

    # test drivers

    def emit(self, name: str, value: object) -> None:
        self.properties[name] = value
        for callback in list(self.observers.get(name, [])):
            callback(name, value)

    def fire_event(self, name: str, event: Optional[Dict] = None) -> None:
        for callback in list(self.events.get(name, [])):
            callback(event or {"event": name})

    def active_timers(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if timer.active]

    def tick(self, count: int = 1) -> None:
        for _ in range(count):
            for timer in list(self.timers):
                if timer.active:
                    timer.callback()

    def loadfile_commands(self) -> List[tuple]:
        return [cmd for cmd in self.commands if cmd[0] == "loadfile"]


def make_settings(**overrides: object) -> Settings:
    values: Dict[str, object] = {
        "paused_for_cache_timer_enabled": True,
        "paused_for_cache_timer_interval": 1.0,
        "paused_for_cache_timer_timeout": 10.0,
        "demuxer_cache_timer_enabled": True,
        "demuxer_cache_timer_interval": 2.0,
        "demuxer_cache_timer_timeout": 20.0,
        "reload_eof_enabled": False,
        "reload_key_binding": "Ctrl+r",
    }
    values.update(overrides)
    return Settings(**values)
