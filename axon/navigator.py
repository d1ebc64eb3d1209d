"""Focus and modal state of the terminal client.

The navigator keeps a stack of panels, root first. The last panel holds the
focus and receives every key. Panels are plain dataclasses tagged with a
:class:`PanelKind`; they carry only their own focus data and look resources up
in the current snapshot by id.
"""

from __future__ import annotations

import asyncio
import enum
import functools
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, List, Optional, Tuple, Union

from .client import ConnectionState, ControlHandle, SessionContext, Synchronizer
from .config import SORT_MODES
from .errors import AuthError, NotConnected
from .logging import get_logger
from .mirror import Snapshot
from .models import Status, Torrent, Tracker, UNLIMITED
from .query import FilterView


LOG = get_logger(__name__)

KIB = 1024
CLOSE_KEYS = ("escape", "q")
ERROR_CLOSE_KEYS = ("escape", "q", "enter", "backspace", "delete")


class PanelKind(str, enum.Enum):
    LOGIN = "login"
    TORRENT_LIST = "torrent_list"
    DETAILS = "details"
    TRACKERS = "trackers"
    LIMITS = "limits"
    ERROR_VIEW = "error_view"
    FILTER_INPUT = "filter_input"


@dataclass(eq=False)
class LoginPanel:
    kind: ClassVar[PanelKind] = PanelKind.LOGIN
    server: str = ""
    password: str = ""
    # 0 = server field, 1 = password field
    field: int = 0
    error: str | None = None
    connecting: bool = False


@dataclass(eq=False)
class TorrentListPanel:
    kind: ClassVar[PanelKind] = PanelKind.TORRENT_LIST
    cursor: int = 0
    selected_id: str | None = None
    message: str | None = None
    pending: ControlHandle | None = None


@dataclass(eq=False)
class DetailsPanel:
    kind: ClassVar[PanelKind] = PanelKind.DETAILS
    torrent_id: str


@dataclass(eq=False)
class TrackersPanel:
    kind: ClassVar[PanelKind] = PanelKind.TRACKERS
    torrent_id: str
    cursor: int = 0


@dataclass(eq=False)
class LimitsPanel:
    kind: ClassVar[PanelKind] = PanelKind.LIMITS
    torrent_id: str
    # upload, download in KiB/s; "" follows the global limit, "-1" is unlimited
    fields: List[str] = field(default_factory=lambda: ["", ""])
    cursor: int = 0
    error: str | None = None
    pending: ControlHandle | None = None


@dataclass(eq=False)
class ErrorViewPanel:
    kind: ClassVar[PanelKind] = PanelKind.ERROR_VIEW
    title: str
    lines: List[str]
    torrent_id: str | None = None


@dataclass(eq=False)
class FilterInputPanel:
    kind: ClassVar[PanelKind] = PanelKind.FILTER_INPUT
    cursor: int = 0


Panel = Union[LoginPanel, TorrentListPanel, DetailsPanel, TrackersPanel, LimitsPanel, ErrorViewPanel, FilterInputPanel]


def natural_key(text: str) -> list:
    # odd positions hold the digit runs
    return [int(part) if index % 2 else part for index, part in enumerate(re.split(r"(\d+)", text.lower()))]


def sort_rows(ids: Tuple[str, ...], snapshot: Snapshot, mode: str) -> Tuple[str, ...]:
    torrents = snapshot.torrents
    if mode == "name":
        return tuple(sorted(ids, key=lambda tid: natural_key(torrents[tid].display_name)))
    if mode == "size":
        return tuple(sorted(ids, key=lambda tid: (torrents[tid].size is None, torrents[tid].size or 0)))
    if mode == "progress":
        return tuple(sorted(ids, key=lambda tid: torrents[tid].progress))
    return ids


def limit_to_text(value: int | None) -> str:
    if value is None:
        return ""
    if value == UNLIMITED:
        return str(UNLIMITED)
    return str(value // KIB)


def text_to_limit(text: str) -> int | None:
    """KiB/s text to bytes/s; raises ValueError on garbage."""
    text = text.strip()
    if not text:
        return None
    value = int(text)
    if value == UNLIMITED:
        return UNLIMITED
    if value < 0:
        raise ValueError(f"invalid limit {text!r}")
    return value * KIB


def _printable(character: str | None) -> bool:
    return bool(character) and len(character) == 1 and character.isprintable()


class Navigator:
    def __init__(
        self,
        session: SessionContext,
        synchronizer: Synchronizer,
        *,
        filter_text: str = "",
        case_sensitive: bool = False,
        sort_mode: str = "none",
        page_size: int = 20,
        on_change: Callable[[], None] | None = None,
    ):
        self.session = session
        self.synchronizer = synchronizer
        self.view = FilterView(filter_text, case_sensitive)
        self.sort_mode = sort_mode if sort_mode in SORT_MODES else "none"
        self.page_size = max(1, page_size)
        self.snapshot = synchronizer.snapshot
        self.on_change = on_change
        self.stack: List[Panel] = [LoginPanel(server=session.server, password=session.password or "")]
        self._rows: Tuple[str, ...] = ()
        self._rows_key: tuple | None = None
        self._tasks: set[asyncio.Task] = set()
        synchronizer.add_state_listener(self.on_session_state)
        synchronizer.add_snapshot_listener(self.on_snapshot)

    # -- stack -----------------------------------------------------------

    @property
    def focus(self) -> Panel:
        return self.stack[-1]

    @property
    def root(self) -> Panel:
        return self.stack[0]

    @property
    def kinds(self) -> List[PanelKind]:
        return [panel.kind for panel in self.stack]

    def find(self, kind: PanelKind) -> Optional[Panel]:
        for panel in reversed(self.stack):
            if panel.kind is kind:
                return panel
        return None

    def _on_stack(self, panel: Panel) -> bool:
        return any(entry is panel for entry in self.stack)

    def _push(self, panel: Panel) -> None:
        self.stack.append(panel)
        LOG.debug("Focus -> %s", panel.kind.value)

    def _pop(self) -> Panel | None:
        if len(self.stack) == 1:
            return None
        panel = self.stack.pop()
        self._release(panel, "panel closed")
        LOG.debug("Focus <- %s", self.focus.kind.value)
        return panel

    def _reset(self, root: Panel) -> None:
        for panel in self.stack:
            if panel is not root:
                self._release(panel, "panel closed")
        self.stack = [root]

    @staticmethod
    def _release(panel: Panel, reason: str) -> None:
        handle = getattr(panel, "pending", None)
        if handle is not None:
            handle.cancel(reason)
            panel.pending = None

    # -- rows ------------------------------------------------------------

    @property
    def rows(self) -> Tuple[str, ...]:
        return self.refresh_rows()

    def refresh_rows(self) -> Tuple[str, ...]:
        """Visible torrent ids: filtered, then sorted. Re-done only when an input changed."""
        key = (self.snapshot.version, self.view.query, self.sort_mode)
        if key != self._rows_key:
            ids = self.view.ids(self.snapshot)
            self._rows = sort_rows(ids, self.snapshot, self.sort_mode)
            self._rows_key = key
            self._sync_cursor()
        return self._rows

    def _list_panel(self) -> TorrentListPanel | None:
        root = self.root
        return root if isinstance(root, TorrentListPanel) else None

    def _sync_cursor(self) -> None:
        panel = self._list_panel()
        if panel is None:
            return
        rows = self._rows
        if panel.selected_id in rows:
            panel.cursor = rows.index(panel.selected_id)
            return
        if not rows:
            panel.cursor = 0
            panel.selected_id = None
            return
        panel.cursor = max(0, min(panel.cursor, len(rows) - 1))
        panel.selected_id = rows[panel.cursor]

    def _move(self, panel: TorrentListPanel, index: int) -> None:
        rows = self.rows
        if not rows:
            return
        panel.cursor = max(0, min(index, len(rows) - 1))
        panel.selected_id = rows[panel.cursor]

    def torrent(self, torrent_id: str | None) -> Torrent | None:
        if torrent_id is None:
            return None
        return self.snapshot.torrents.get(torrent_id)

    def focused_torrent(self) -> Torrent | None:
        panel = self._list_panel()
        if panel is None:
            return None
        self.refresh_rows()
        return self.torrent(panel.selected_id)

    def trackers_for(self, torrent_id: str) -> List[Tracker]:
        torrent = self.torrent(torrent_id)
        return self.snapshot.trackers_of(torrent) if torrent else []

    # -- synchronizer events ---------------------------------------------

    def on_session_state(self, state: ConnectionState, error: Exception | None) -> None:
        if state in (ConnectionState.AUTHENTICATING, ConnectionState.DISCONNECTED):
            if self.session.resumable:
                self._collapse_to_list(error)
            else:
                self._force_login(state, error)
        elif state is ConnectionState.LIVE:
            panel = self._list_panel()
            if panel is None:
                self._reset(TorrentListPanel())
            else:
                panel.message = None
            self._rows_key = None
        self._changed()

    def on_snapshot(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot
        # overlays of torrents that disappeared are closed
        while len(self.stack) > 1:
            torrent_id = getattr(self.focus, "torrent_id", None)
            if torrent_id is None or torrent_id in snapshot.torrents:
                break
            self._pop()

    def _collapse_to_list(self, error: Exception | None) -> None:
        panel = self._list_panel() or TorrentListPanel()
        self._reset(panel)
        if error is not None:
            panel.message = f"Connection lost: {error}"

    def _force_login(self, state: ConnectionState, error: Exception | None) -> None:
        root = self.root
        if not isinstance(root, LoginPanel):
            root = LoginPanel(server=self.session.server, password=self.session.password or "")
        self._reset(root)
        root.connecting = state is ConnectionState.AUTHENTICATING
        if isinstance(error, AuthError):
            root.error = f"Authentication failed: {error}"
        elif error is not None:
            root.error = str(error)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # -- input -----------------------------------------------------------

    def handle_key(self, key: str, character: str | None = None) -> bool:
        """Route one key to the focused panel. False when the key was not used."""
        panel = self.focus
        handler = getattr(self, f"_key_{panel.kind.value}")
        return handler(panel, key, character)

    def _key_login(self, panel: LoginPanel, key: str, character: str | None) -> bool:
        if key in ("tab", "up", "down"):
            panel.field = 1 - panel.field
        elif key == "enter":
            self.submit_login()
        elif key == "backspace":
            if panel.field == 0:
                panel.server = panel.server[:-1]
            else:
                panel.password = panel.password[:-1]
        elif _printable(character):
            if panel.field == 0:
                panel.server += character
            else:
                panel.password += character
        else:
            return False
        return True

    def submit_login(self) -> bool:
        panel = self.root
        if not isinstance(panel, LoginPanel):
            return False
        server = panel.server.strip()
        if not server:
            panel.error = "Server URL is required"
            return False
        panel.error = None
        panel.connecting = True
        self._spawn(self.synchronizer.connect(server, panel.password))
        return True

    def _key_torrent_list(self, panel: TorrentListPanel, key: str, character: str | None) -> bool:
        if key in ("up", "k"):
            self._move(panel, panel.cursor - 1)
        elif key in ("down", "j"):
            self._move(panel, panel.cursor + 1)
        elif key == "home":
            self._move(panel, 0)
        elif key == "end":
            self._move(panel, len(self.rows) - 1)
        elif key == "pageup":
            self._move(panel, panel.cursor - self.page_size)
        elif key == "pagedown":
            self._move(panel, panel.cursor + self.page_size)
        elif key in ("/", "slash", "ctrl+f"):
            self._push(FilterInputPanel(cursor=len(self.view.text)))
        elif key == "ctrl+t":
            self.view.toggle_case()
        elif key == "escape" and self.view.text:
            self.view.set_text("")
        elif key == "s":
            self.sort_mode = SORT_MODES[(SORT_MODES.index(self.sort_mode) + 1) % len(SORT_MODES)]
        elif key == "ctrl+l":
            self._spawn(self.synchronizer.disconnect())
        elif key == "space":
            return self._toggle_pause(panel)
        elif key in ("enter", "d", "t", "l", "e"):
            torrent = self.focused_torrent()
            if torrent is None:
                return False
            return self._open_overlay(key, torrent)
        else:
            return False
        return True

    def _open_overlay(self, key: str, torrent: Torrent) -> bool:
        if key in ("enter", "d"):
            self._push(DetailsPanel(torrent.id))
        elif key == "t":
            self._push(TrackersPanel(torrent.id))
        elif key == "l":
            fields = [limit_to_text(torrent.throttle_up), limit_to_text(torrent.throttle_down)]
            self._push(LimitsPanel(torrent.id, fields=fields))
        elif key == "e":
            lines = self.snapshot.errors_of(torrent)
            if not lines:
                return False
            self._push(ErrorViewPanel("Errors", lines, torrent.id))
        else:
            return False
        return True

    def _toggle_pause(self, panel: TorrentListPanel) -> bool:
        torrent = self.focused_torrent()
        if torrent is None:
            return False
        method = "resume" if torrent.status is Status.PAUSED else "pause"
        self._release(panel, "superseded")
        try:
            handle = self.synchronizer.send_control(method, {"id": torrent.id})
        except NotConnected as exc:
            panel.message = f"{method} failed: {exc}"
            return True
        panel.pending = handle
        panel.message = None
        handle.add_done_callback(functools.partial(self._list_request_done, panel, torrent.display_name))
        return True

    def _list_request_done(self, panel: TorrentListPanel, name: str, handle: ControlHandle) -> None:
        if not self._on_stack(panel) or panel.pending is not handle:
            return
        panel.pending = None
        exc = handle.exception()
        panel.message = f"{handle.method} {name} failed: {exc}" if exc else None
        self._changed()

    def _key_details(self, panel: DetailsPanel, key: str, character: str | None) -> bool:
        if key in CLOSE_KEYS:
            self._pop()
            return True
        if key in ("left", "h", "right"):
            rows = self.rows
            if panel.torrent_id in rows:
                step = 1 if key == "right" else -1
                index = rows.index(panel.torrent_id) + step
                if 0 <= index < len(rows):
                    panel.torrent_id = rows[index]
            return True
        torrent = self.torrent(panel.torrent_id)
        if torrent is None or key not in ("t", "l", "e"):
            return False
        return self._open_overlay(key, torrent)

    def _key_trackers(self, panel: TrackersPanel, key: str, character: str | None) -> bool:
        if key in CLOSE_KEYS:
            self._pop()
        elif key in ("up", "k"):
            panel.cursor = max(0, panel.cursor - 1)
        elif key in ("down", "j"):
            count = len(self.trackers_for(panel.torrent_id))
            panel.cursor = max(0, min(panel.cursor + 1, count - 1))
        else:
            return False
        return True

    def _key_limits(self, panel: LimitsPanel, key: str, character: str | None) -> bool:
        if key == "escape":
            self._pop()
            return True
        if panel.pending is not None:
            return True
        if key in ("up", "down", "tab"):
            panel.cursor = 1 - panel.cursor
        elif key == "enter":
            self._commit_limits(panel)
            return True
        elif key == "backspace":
            panel.fields[panel.cursor] = panel.fields[panel.cursor][:-1]
        elif character and (character.isdigit() or (character == "-" and not panel.fields[panel.cursor])):
            panel.fields[panel.cursor] += character
        else:
            return False
        panel.error = None
        return True

    def _commit_limits(self, panel: LimitsPanel) -> None:
        try:
            up = text_to_limit(panel.fields[0])
            down = text_to_limit(panel.fields[1])
        except ValueError:
            panel.error = "Limits must be KiB/s, -1 for unlimited or empty for global"
            return
        params = {"id": panel.torrent_id, "throttle_up": up, "throttle_down": down}
        try:
            handle = self.synchronizer.send_control("set_throttle", params)
        except NotConnected as exc:
            panel.error = str(exc)
            return
        panel.error = None
        panel.pending = handle
        handle.add_done_callback(functools.partial(self._limits_done, panel))

    def _limits_done(self, panel: LimitsPanel, handle: ControlHandle) -> None:
        if not self._on_stack(panel) or panel.pending is not handle:
            return
        panel.pending = None
        exc = handle.exception()
        if exc is not None:
            panel.error = str(exc)
        elif self.focus is panel:
            self._pop()
        self._changed()

    def _key_error_view(self, panel: ErrorViewPanel, key: str, character: str | None) -> bool:
        if key in ERROR_CLOSE_KEYS:
            self._pop()
            return True
        return False

    def _key_filter_input(self, panel: FilterInputPanel, key: str, character: str | None) -> bool:
        text = self.view.text
        cursor = min(panel.cursor, len(text))
        if key in ("escape", "enter"):
            self._pop()
            return True
        if key == "ctrl+t":
            self.view.toggle_case()
        elif key == "ctrl+u":
            text, cursor = "", 0
        elif key == "backspace":
            if cursor > 0:
                text, cursor = text[: cursor - 1] + text[cursor:], cursor - 1
        elif key == "delete":
            text = text[:cursor] + text[cursor + 1 :]
        elif key == "left":
            cursor = max(0, cursor - 1)
        elif key == "right":
            cursor = min(len(text), cursor + 1)
        elif key == "home":
            cursor = 0
        elif key == "end":
            cursor = len(text)
        elif _printable(character):
            text, cursor = text[:cursor] + character + text[cursor:], cursor + 1
        panel.cursor = cursor
        self.view.set_text(text)
        self.refresh_rows()
        return True

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Background action failed: %s", exc)
