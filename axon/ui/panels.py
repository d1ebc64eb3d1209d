from __future__ import annotations

import time
from typing import Sequence

import humanize
from rich.markup import escape

from ..client import ConnectionState, SessionContext
from ..mirror import Snapshot
from ..models import ServerStats, Status, Torrent, Tracker, UNLIMITED
from ..navigator import ErrorViewPanel, LimitsPanel, LoginPanel, TrackersPanel


STATUS_LABELS = {
    Status.IDLE: "·  Idle",
    Status.SEEDING: "⬆️  Seeding",
    Status.LEECHING: "⬇️  Leeching",
    Status.ERROR: "⚠️  Error",
    Status.PAUSED: "⏸  Paused",
    Status.PENDING: "⏳ Pending",
    Status.HASHING: "🔎 Hashing",
    Status.MAGNET: "🧲 Magnet",
}

TABLE_COLUMNS = ("Name", "Size", "Done", "↓", "↑", "Ratio", "Status")


def fmt_size(value: int | None) -> str:
    if value is None:
        return "?"
    return humanize.naturalsize(value, binary=True)


def fmt_rate(value: int) -> str:
    return f"{humanize.naturalsize(value, binary=True)}/s"


def fmt_limit(value: int | None, fallback: str = "global") -> str:
    if value is None:
        return fallback
    if value == UNLIMITED:
        return "unlimited"
    return fmt_rate(value)


def fmt_percent(value: float) -> str:
    return f"{value:5.1f}%"


def status_label(status: Status) -> str:
    return STATUS_LABELS.get(status, status.value)


def torrent_row(torrent: Torrent) -> tuple[str, ...]:
    return (
        torrent.display_name,
        fmt_size(torrent.size),
        fmt_percent(torrent.progress),
        fmt_rate(torrent.rate_down),
        fmt_rate(torrent.rate_up),
        f"{torrent.ratio:.2f}",
        status_label(torrent.status),
    )


def render_login(panel: LoginPanel, session: SessionContext, now: float) -> str:
    marks = ["▸" if panel.field == index else " " for index in (0, 1)]
    lines = [
        "[b]Axon[/b] · connect to a synapse daemon",
        "",
        f"{marks[0]} Server:   {escape(panel.server)}",
        f"{marks[1]} Password: {'*' * len(panel.password)}",
        "",
    ]
    if panel.connecting and session.state in (ConnectionState.AUTHENTICATING, ConnectionState.SYNCING_SNAPSHOT):
        lines.append(f"[yellow]{session.state.value} …[/]")
    if panel.error:
        lines.append(f"[red]{escape(panel.error)}[/]")
        if session.reconnect_at is not None:
            lines.append(f"[dim]retrying in {max(0.0, session.reconnect_at - now):.0f}s[/]")
    lines.append("[dim]tab switches fields · enter connects · ctrl+q quits[/]")
    return "\n".join(lines)


def render_details(torrent: Torrent, snapshot: Snapshot) -> str:
    hosts = ", ".join(snapshot.tracker_hosts(torrent)) or "none"
    md = f"""
## {torrent.display_name}

- Status: `{status_label(torrent.status)}`
- Done: `{fmt_percent(torrent.progress)}` of `{fmt_size(torrent.size)}`
- Speed: `↓ {fmt_rate(torrent.rate_down)}` / `↑ {fmt_rate(torrent.rate_up)}`
- Transferred: `↓ {fmt_size(torrent.transferred_down)}` / `↑ {fmt_size(torrent.transferred_up)}`, Ratio: `{torrent.ratio:.2f}`
- Limits: `↓ {fmt_limit(torrent.throttle_down)}` / `↑ {fmt_limit(torrent.throttle_up)}`
- Peers: `{torrent.peers}`{" (private)" if torrent.private else ""}
- Trackers: `{hosts}`
- Path: `{torrent.path or "-"}`
"""
    if torrent.error_message:
        md += f"\n> **Error:** {torrent.error_message}\n"
    return md + "\n_t trackers · l limits · e errors · ←/→ previous/next · esc close_\n"


def _reported(tracker: Tracker, now: float) -> str:
    if tracker.last_report is None:
        return "never"
    return humanize.naturaltime(max(0.0, now - tracker.last_report))


def render_trackers(torrent: Torrent, trackers: Sequence[Tracker], panel: TrackersPanel, now: float | None = None) -> str:
    now = time.time() if now is None else now
    if not trackers:
        return f"## Trackers of {torrent.display_name}\n\n_No trackers_\n"
    rows = ["| | Host | Last report | Error |", "|---|---|---|---|"]
    for index, tracker in enumerate(trackers):
        mark = "▸" if index == panel.cursor else ""
        rows.append(f"| {mark} | {tracker.display_host} | {_reported(tracker, now)} | {tracker.error or ''} |")
    return f"## Trackers of {torrent.display_name}\n\n" + "\n".join(rows) + "\n"


def render_limits(panel: LimitsPanel, torrent: Torrent, session: SessionContext) -> str:
    labels = ("Upload", "Download")
    lines = [f"## Rate limits of {torrent.display_name}", ""]
    for index, label in enumerate(labels):
        mark = "▸" if index == panel.cursor else " "
        value = panel.fields[index] or "(global)"
        lines.append(f"- {mark} {label} KiB/s: `{value}`")
    lines += [
        "",
        f"Global: `↑ {fmt_limit(session.throttle_up, 'unlimited')}` / `↓ {fmt_limit(session.throttle_down, 'unlimited')}`",
        "",
    ]
    if panel.pending is not None:
        lines.append("_Applying…_")
    if panel.error:
        lines.append(f"> **Error:** {panel.error}")
    lines.append("_-1 unlimited · empty follows the global limit · enter apply · esc cancel_")
    return "\n".join(lines) + "\n"


def render_errors(panel: ErrorViewPanel) -> str:
    body = "\n".join(f"- {line}" for line in panel.lines) or "_No errors_"
    return f"## {panel.title}\n\n{body}\n\n_esc close_\n"


def render_server(server: ServerStats, session: SessionContext, now: float | None = None) -> str:
    now = time.time() if now is None else now
    parts = [
        f"[b]↓ {fmt_rate(server.rate_down)}[/] ({fmt_limit(server.throttle_down, 'unlimited')})",
        f"[b]↑ {fmt_rate(server.rate_up)}[/] ({fmt_limit(server.throttle_up, 'unlimited')})",
        f"Session ↓ {fmt_size(server.ses_transferred_down)} ↑ {fmt_size(server.ses_transferred_up)} ratio {server.session_ratio:.2f}",
        f"Lifetime ↓ {fmt_size(server.transferred_down)} ↑ {fmt_size(server.transferred_up)}",
        f"Free {fmt_size(server.free_space)}",
    ]
    if server.started is not None:
        parts.append(f"Up {humanize.naturaldelta(max(0.0, now - server.started))}")
    return " · ".join(parts)
