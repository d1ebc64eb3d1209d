from __future__ import annotations

import asyncio
import time
from typing import Callable

from rich.markup import escape
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Vertical
from textual.widgets import DataTable, Footer, Header, Markdown, Static

from ..client import ConnectionState, SessionContext, Synchronizer
from ..config import AppConfig, save_config
from ..logging import get_logger
from ..navigator import (
    DetailsPanel,
    ErrorViewPanel,
    LimitsPanel,
    LoginPanel,
    Navigator,
    PanelKind,
    TrackersPanel,
)
from ..transport import Transport
from .panels import (
    TABLE_COLUMNS,
    render_details,
    render_errors,
    render_limits,
    render_login,
    render_server,
    render_trackers,
    torrent_row,
)


LOG = get_logger(__name__)

OVERLAYS = (PanelKind.DETAILS, PanelKind.TRACKERS, PanelKind.LIMITS, PanelKind.ERROR_VIEW)


class AxonApp(App):
    TITLE = "axon"
    CSS = """
    #login {
        padding: 1 2;
        border: tall $accent;
        height: auto;
    }
    #filter {
        height: 1;
        padding: 0 1;
    }
    #table {
        height: 1fr;
    }
    #overlay {
        border: tall $accent;
        background: $panel;
        height: auto;
        max-height: 60%;
        padding: 0 1;
    }
    #status {
        height: auto;
        padding: 0 1;
        background: $boost;
    }
    """
    BINDINGS = [Binding("ctrl+q", "quit", "Quit", priority=True)]
    # every key goes through the navigator
    AUTO_FOCUS = None

    def __init__(self, config: AppConfig, *, transport_factory: Callable[[str], Transport] | None = None):
        super().__init__()
        self.config = config
        self.session = SessionContext(server=config.rpc.server, password=config.rpc.password)
        self.synchronizer = Synchronizer(config, self.session, transport_factory=transport_factory)
        self.navigator = Navigator(
            self.session,
            self.synchronizer,
            filter_text=config.ui.filter_text,
            case_sensitive=config.ui.case_sensitive,
            sort_mode=config.ui.sort_mode,
            page_size=config.ui.page_size,
            on_change=self._schedule_render,
        )
        self.synchronizer.add_snapshot_listener(lambda _snapshot: self._schedule_render())
        self._render_pending = False
        self._closing = False
        self._table_key: tuple | None = None
        self._refresh_timer = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Container(id="main"):
            yield Static(id="login")
            with Vertical(id="list"):
                yield Static(id="filter")
                table = DataTable(id="table", zebra_stripes=True, cursor_type="row")
                table.can_focus = False
                yield table
            yield Markdown("", id="overlay")
        yield Static(id="status")
        yield Footer()

    async def on_mount(self) -> None:
        table = self.query_one("#table", DataTable)
        table.add_columns(*TABLE_COLUMNS)
        self._refresh_timer = self.set_interval(max(0.2, self.config.ui.refresh_interval), self.render_all)
        if self.config.rpc.autoconnect:
            LOG.info("Autoconnect to %s", self.config.rpc.server)
            self.navigator.submit_login()
        self.render_all()

    async def on_key(self, event: events.Key) -> None:
        if self.navigator.handle_key(event.key, event.character):
            event.stop()
            event.prevent_default()
        self.render_all()
        self._persist_ui()

    async def action_quit(self) -> None:
        self._closing = True
        await self.synchronizer.close()
        self.exit()

    def _schedule_render(self) -> None:
        # bursts of updates collapse into one repaint
        if self._render_pending or self._closing:
            return
        self._render_pending = True
        self.call_later(self.render_all)

    def render_all(self) -> None:
        self._render_pending = False
        root = self.navigator.root
        login = self.query_one("#login", Static)
        listing = self.query_one("#list", Vertical)
        if isinstance(root, LoginPanel):
            login.display = True
            listing.display = False
            login.update(render_login(root, self.session, asyncio.get_running_loop().time()))
        else:
            login.display = False
            listing.display = True
            self._render_filter()
            self._render_table()
        self._render_overlay()
        self._render_status()

    def _render_filter(self) -> None:
        view = self.navigator.view
        editing = self.navigator.focus.kind is PanelKind.FILTER_INPUT
        case = "Aa" if view.case_sensitive else "aA"
        text = escape(view.text) if view.text else "[dim]/ to filter: t:tracker s>500 s:sl p<50 …[/]"
        prefix = "[reverse]Filter[/]" if editing else "Filter"
        self.query_one("#filter", Static).update(
            f"{prefix} ({case}) {text} · sort {self.navigator.sort_mode} · {len(self.navigator.rows)}/{len(self.navigator.snapshot.torrents)}"
        )

    def _render_table(self) -> None:
        table = self.query_one("#table", DataTable)
        rows = self.navigator.rows
        key = (rows, self.navigator.snapshot.version)
        if key != self._table_key:
            torrents = self.navigator.snapshot.torrents
            table.clear()
            for torrent_id in rows:
                table.add_row(*torrent_row(torrents[torrent_id]), key=torrent_id)
            self._table_key = key
        panel = self.navigator.root
        if rows and getattr(panel, "cursor", None) is not None:
            table.move_cursor(row=panel.cursor)

    def _render_overlay(self) -> None:
        overlay = self.query_one("#overlay", Markdown)
        panel = self.navigator.focus
        if panel.kind not in OVERLAYS:
            overlay.display = False
            return
        markdown = self._overlay_markdown(panel)
        overlay.display = markdown is not None
        if markdown is not None:
            overlay.update(markdown)

    def _overlay_markdown(self, panel) -> str | None:
        if isinstance(panel, ErrorViewPanel):
            return render_errors(panel)
        torrent = self.navigator.torrent(panel.torrent_id)
        if torrent is None:
            return None
        if isinstance(panel, DetailsPanel):
            return render_details(torrent, self.navigator.snapshot)
        if isinstance(panel, TrackersPanel):
            return render_trackers(torrent, self.navigator.trackers_for(torrent.id), panel, time.time())
        if isinstance(panel, LimitsPanel):
            return render_limits(panel, torrent, self.session)
        return None

    def _render_status(self) -> None:
        status = self.query_one("#status", Static)
        state = self.session.state
        if state is ConnectionState.LIVE:
            line = render_server(self.navigator.snapshot.server, self.session, time.time())
        elif self.session.error is not None:
            line = f"[red]{escape(str(self.session.error))}[/]"
        else:
            line = f"[dim]{state.value}[/]"
        message = getattr(self.navigator.root, "message", None)
        if message:
            line += f"\n[yellow]{escape(message)}[/]"
        status.update(line)
        self.sub_title = f"{self.session.server} · {state.value}"

    def _persist_ui(self) -> None:
        ui = self.config.ui
        view = self.navigator.view
        current = (view.text, view.case_sensitive, self.navigator.sort_mode)
        if current == (ui.filter_text, ui.case_sensitive, ui.sort_mode):
            return
        ui.filter_text, ui.case_sensitive, ui.sort_mode = current
        try:
            save_config(self.config)
        except Exception as exc:  # noqa: BLE001
            LOG.warning("Config save failed: %s", exc)
