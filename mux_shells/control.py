"""Parser for tmux control mode.

Control mode writes one notification per line, prefixed with ``%``:

- ``%begin <ts> <id> <flags>`` / ``%end <ts> <id> <flags>`` / ``%error ...``
  bracket the output of a command
- ``%output %<pane> <escaped>`` pane output
- ``%layout-change @<window> <layout> ...``
- ``%window-add @<window>`` / ``%window-close @<window>`` /
  ``%window-renamed @<window> <name>``
- ``%session-changed $<session> <name>``
- ``%pane-mode-changed %<pane>``
- ``%exit [reason]``

Any other line is command output and only matters while a response is open.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple, Union

from loguru import logger

from .events import (
    Connected,
    ControlEvent,
    Disconnected,
    LayoutChanged,
    PaneModeChanged,
    PaneOutput,
    WindowAdded,
    WindowClosed,
    WindowRenamed,
)
from .layout import LayoutError, iter_leaves, parse_layout, scan_pane_ids

SENTINEL = "%"
# -CC clients get the stream wrapped in a DCS sequence.
_DCS_START = "\x1bP1000p"
_DCS_END = "\x1b\\"

_HEX = "0123456789abcdefABCDEF"
_OCTAL = "01234567"


@dataclass(frozen=True)
class Pane:
    id: str
    window_id: str
    width: int = 0
    height: int = 0
    x: int = 0
    y: int = 0
    title: str = ""
    current_path: str = ""
    in_copy_mode: bool = False
    is_active: bool = False


@dataclass(frozen=True)
class Window:
    id: str
    name: str
    layout: str = ""
    is_active: bool = False


@dataclass
class CommandResponse:
    id: int
    output: str = ""
    is_complete: bool = False
    is_error: bool = False


def percent_decode(text: str) -> bytes:
    """Decode pane output into raw bytes.

    ``%HH`` is one escaped byte; tmux's own ``\\ooo`` octal escapes are accepted
    too. Every other character stands for its UTF-8 encoding. A malformed
    ``%`` escape ends decoding and the bytes decoded so far are returned.
    """
    out = bytearray()
    i = 0
    n = len(text)
    while i < n:
        char = text[i]
        if char == "%":
            pair = text[i + 1:i + 3]
            if len(pair) != 2 or pair[0] not in _HEX or pair[1] not in _HEX:
                break
            out.append(int(pair, 16))
            i += 3
            continue
        if char == "\\":
            digits = text[i + 1:i + 4]
            if len(digits) == 3 and all(d in _OCTAL for d in digits):
                out.append(int(digits, 8) & 0xFF)
                i += 4
                continue
        out.extend(char.encode("utf-8"))
        i += 1
    return bytes(out)


def percent_encode(data: bytes) -> str:
    parts: List[str] = []
    for byte in data:
        if 0x20 <= byte < 0x7F and byte not in (0x25, 0x5C):
            parts.append(chr(byte))
        else:
            parts.append(f"%{byte:02X}")
    return "".join(parts)


def _strip_sigil(ref: str, sigil: str) -> str:
    return ref[1:] if ref.startswith(sigil) else ref


class ControlModeParser:
    """Turns the control-mode byte stream into events and tracked state.

    `feed` is synchronous and does no I/O so it can run inside the reader
    callback. Panes and windows are owned here and only handed out as
    snapshots.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._current: Optional[CommandResponse] = None
        self._completed: Dict[int, CommandResponse] = {}
        self._begun: List[int] = []
        self._panes: Dict[str, Pane] = {}
        self._windows: Dict[str, Window] = {}
        self.current_layout = ""
        self.is_connected = False
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # State

    @property
    def panes(self) -> Tuple[Pane, ...]:
        return tuple(self._panes.values())

    @property
    def windows(self) -> Tuple[Window, ...]:
        return tuple(self._windows.values())

    def get_pane(self, pane_id: str) -> Optional[Pane]:
        return self._panes.get(pane_id)

    def get_window(self, window_id: str) -> Optional[Window]:
        return self._windows.get(window_id)

    def panes_in_window(self, window_id: str) -> Tuple[Pane, ...]:
        return tuple(p for p in self._panes.values() if p.window_id == window_id)

    @property
    def open_response(self) -> Optional[CommandResponse]:
        return self._current

    def completed_ids(self) -> List[int]:
        return sorted(self._completed)

    def claim(self, command_id: int) -> Optional[CommandResponse]:
        return self._completed.pop(command_id, None)

    def take_begun(self) -> List[int]:
        """Ids of responses to this client's commands, in arrival order, since the last call."""
        begun, self._begun = self._begun, []
        return begun

    def reset(self) -> None:
        self._buffer = ""
        self._decoder.reset()
        self._current = None
        self._completed.clear()
        self._begun.clear()
        self._panes.clear()
        self._windows.clear()
        self.current_layout = ""
        self.is_connected = False
        self.last_error = None

    # ------------------------------------------------------------------
    # Input

    def feed(self, data: Union[bytes, bytearray, memoryview, str]) -> List[ControlEvent]:
        """Consume a chunk and return the events of every line it completed."""
        if isinstance(data, str):
            text = data
        else:
            text = self._decoder.decode(bytes(data))
            if "\ufffd" in text:
                self.last_error = "Failed to decode control mode data as UTF-8; invalid bytes replaced"
                logger.warning(f"[control] {self.last_error}")

        self._buffer += text
        events: List[ControlEvent] = []
        while True:
            idx = self._buffer.find("\n")
            if idx < 0:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            self._parse_line(line, events)
        return events

    def _parse_line(self, line: str, events: List[ControlEvent]) -> None:
        if line.startswith(_DCS_START):
            line = line[len(_DCS_START):]
        if line.startswith(_DCS_END):
            line = line[len(_DCS_END):]
        if line.startswith(SENTINEL):
            self._parse_control_line(line, events)
        elif self._current is not None:
            self._current.output += line + "\n"

    def _parse_control_line(self, line: str, events: List[ControlEvent]) -> None:
        parts = line[1:].split(" ", 2)
        verb = parts[0]
        handler = self._handlers.get(verb)
        if handler is None:
            logger.debug(f"[control] ignoring unknown control message: {verb}")
            return
        handler(self, parts, events)

    # ------------------------------------------------------------------
    # Handlers

    @staticmethod
    def _command_id(parts: List[str]) -> Optional[int]:
        # <verb> <ts> <id> <flags>; the id leads the unsplit remainder.
        if len(parts) < 3:
            return None
        token = parts[2].split(" ", 1)[0]
        try:
            return int(token)
        except ValueError:
            return None

    def _on_begin(self, parts: List[str], events: List[ControlEvent]) -> None:
        command_id = self._command_id(parts)
        if command_id is None:
            return
        if self._current is not None:
            logger.debug(f"[control] begin {command_id} while {self._current.id} still open; dropping it")
        self._current = CommandResponse(id=command_id)
        # flags 1: the command came from this control client.
        tokens = parts[2].split(" ")
        if len(tokens) > 1 and tokens[1] == "1":
            self._begun.append(command_id)

    def _close(self, parts: List[str], *, is_error: bool) -> None:
        command_id = self._command_id(parts)
        if command_id is None:
            return
        current = self._current
        if current is None or current.id != command_id:
            logger.debug(f"[control] unmatched {'error' if is_error else 'end'} for command {command_id}")
            return
        current.is_complete = True
        current.is_error = is_error
        self._completed[command_id] = current
        self._current = None

    def _on_end(self, parts: List[str], events: List[ControlEvent]) -> None:
        self._close(parts, is_error=False)

    def _on_error(self, parts: List[str], events: List[ControlEvent]) -> None:
        self._close(parts, is_error=True)

    def _on_output(self, parts: List[str], events: List[ControlEvent]) -> None:
        if len(parts) < 2:
            return
        pane_id = _strip_sigil(parts[1], "%")
        payload = parts[2] if len(parts) > 2 else ""
        events.append(PaneOutput(pane_id, percent_decode(payload)))

    def _on_layout_change(self, parts: List[str], events: List[ControlEvent]) -> None:
        if len(parts) < 3:
            return
        window_id = _strip_sigil(parts[1], "@")
        # Newer tmux appends the visible layout and window flags.
        layout = parts[2].split(" ", 1)[0]

        self.current_layout = layout
        self._apply_layout(window_id, layout)
        events.append(LayoutChanged(window_id, layout))

    def _apply_layout(self, window_id: str, layout: str) -> None:
        try:
            cells = [
                (leaf.pane_id, leaf.width, leaf.height, leaf.x, leaf.y)
                for leaf in iter_leaves(parse_layout(layout))
            ]
        except LayoutError as exc:
            logger.debug(f"[control] layout did not parse ({exc}); falling back to id scan")
            cells = [(pane_id, 0, 0, 0, 0) for pane_id in scan_pane_ids(layout)]

        if not cells:
            return

        window = self._windows.get(window_id)
        if window is None:
            self._windows[window_id] = Window(id=window_id, name=f"Window {window_id}", layout=layout)
        else:
            self._windows[window_id] = replace(window, layout=layout)

        fresh = {cell[0] for cell in cells}
        for pane_id in [p.id for p in self._panes.values() if p.window_id in (window_id, "")]:
            if pane_id not in fresh:
                del self._panes[pane_id]

        for pane_id, width, height, x, y in cells:
            previous = self._panes.get(pane_id)
            if previous is None:
                self._panes[pane_id] = Pane(pane_id, window_id, width, height, x, y)
            else:
                self._panes[pane_id] = replace(
                    previous, window_id=window_id, width=width, height=height, x=x, y=y
                )

    def _on_window_add(self, parts: List[str], events: List[ControlEvent]) -> None:
        if len(parts) < 2:
            return
        window_id = _strip_sigil(parts[1], "@")
        if window_id not in self._windows:
            self._windows[window_id] = Window(id=window_id, name=f"Window {window_id}")
        events.append(WindowAdded(window_id))

    def _on_window_close(self, parts: List[str], events: List[ControlEvent]) -> None:
        if len(parts) < 2:
            return
        window_id = _strip_sigil(parts[1], "@")
        self._windows.pop(window_id, None)
        for pane_id in [p.id for p in self._panes.values() if p.window_id == window_id]:
            del self._panes[pane_id]
        events.append(WindowClosed(window_id))

    def _on_window_renamed(self, parts: List[str], events: List[ControlEvent]) -> None:
        if len(parts) < 3:
            return
        window_id = _strip_sigil(parts[1], "@")
        name = parts[2]
        window = self._windows.get(window_id)
        if window is not None:
            self._windows[window_id] = replace(window, name=name)
        events.append(WindowRenamed(window_id, name))

    def _on_session_changed(self, parts: List[str], events: List[ControlEvent]) -> None:
        if len(parts) < 3:
            return
        session_id = _strip_sigil(parts[1], "$")
        self.is_connected = True
        events.append(Connected(session_id, parts[2]))

    def _on_pane_mode_changed(self, parts: List[str], events: List[ControlEvent]) -> None:
        if len(parts) < 2:
            return
        pane_id = _strip_sigil(parts[1], "%")
        pane = self._panes.get(pane_id)
        if pane is None:
            return
        updated = replace(pane, in_copy_mode=not pane.in_copy_mode)
        self._panes[pane_id] = updated
        events.append(PaneModeChanged(pane_id, updated.in_copy_mode))

    def _on_exit(self, parts: List[str], events: List[ControlEvent]) -> None:
        reason = " ".join(parts[1:]).strip() or None
        self.is_connected = False
        events.append(Disconnected(reason))

    _handlers = {
        "begin": _on_begin,
        "end": _on_end,
        "error": _on_error,
        "output": _on_output,
        "layout-change": _on_layout_change,
        "window-add": _on_window_add,
        "window-close": _on_window_close,
        "window-renamed": _on_window_renamed,
        "session-changed": _on_session_changed,
        "pane-mode-changed": _on_pane_mode_changed,
        "exit": _on_exit,
    }
