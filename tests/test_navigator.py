import asyncio

import pytest

from axon.client import ConnectionState
from axon.errors import RequestCancelled
from axon.navigator import (
    ErrorViewPanel,
    LimitsPanel,
    LoginPanel,
    Navigator,
    PanelKind,
    TorrentListPanel,
    limit_to_text,
    natural_key,
    text_to_limit,
)

from conftest import PASSWORD, wait_until

LIST = [PanelKind.TORRENT_LIST]


def press(nav, *keys):
    handled = []
    for key in keys:
        character = key if len(key) == 1 else (" " if key == "space" else None)
        handled.append(nav.handle_key(key, character))
    return handled


@pytest.fixture
async def nav(sync):
    navigator = Navigator(sync.session, sync)
    await sync.connect()
    return navigator


def test_limit_text_conversion() -> None:
    assert limit_to_text(None) == ""
    assert limit_to_text(-1) == "-1"
    assert limit_to_text(10 * 1024) == "10"
    assert text_to_limit("") is None
    assert text_to_limit("-1") == -1
    assert text_to_limit("64") == 64 * 1024
    with pytest.raises(ValueError):
        text_to_limit("-")
    with pytest.raises(ValueError):
        text_to_limit("-5")


def test_natural_key_orders_numbers_by_value() -> None:
    names = ["file10", "File9", "file1"]
    assert sorted(names, key=natural_key) == ["file1", "File9", "file10"]


@pytest.mark.asyncio
async def test_login_edits_and_connects(sync) -> None:
    navigator = Navigator(sync.session, sync)
    login = navigator.root
    assert navigator.kinds == [PanelKind.LOGIN]
    assert isinstance(login, LoginPanel)
    assert (login.server, login.password) == ("ws://daemon.test:8412", PASSWORD)

    press(navigator, "backspace", "2", "down", "backspace", "2")
    assert login.server == "ws://daemon.test:8412"
    assert login.password == PASSWORD
    assert login.field == 1

    assert press(navigator, "enter") == [True]
    assert login.connecting
    await wait_until(lambda: sync.state is ConnectionState.LIVE)

    assert navigator.kinds == LIST
    assert navigator.rows == ("t1", "t2", "t3", "t4")


@pytest.mark.asyncio
async def test_login_requires_a_server(sync) -> None:
    navigator = Navigator(sync.session, sync)
    navigator.root.server = "  "
    press(navigator, "enter")
    assert navigator.root.error == "Server URL is required"
    assert sync.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_rejected_password_stays_on_login_with_error(sync) -> None:
    navigator = Navigator(sync.session, sync)
    press(navigator, "tab", *["backspace"] * len(PASSWORD), "b", "a", "d", "enter")

    await wait_until(lambda: navigator.root.error is not None)

    assert navigator.kinds == [PanelKind.LOGIN]
    assert navigator.root.error == "Authentication failed: invalid password"
    assert not navigator.root.connecting


@pytest.mark.asyncio
async def test_unreachable_daemon_keeps_login_root(sync, daemon) -> None:
    daemon.refuse = True
    navigator = Navigator(sync.session, sync)
    press(navigator, "enter")

    await wait_until(lambda: navigator.root.error is not None)

    assert navigator.kinds == [PanelKind.LOGIN]
    assert "connection refused" in navigator.root.error
    assert sync.session.reconnect_at is not None


@pytest.mark.asyncio
async def test_row_cursor_moves_and_clamps(nav) -> None:
    panel = nav.root
    assert isinstance(panel, TorrentListPanel)

    press(nav, "down", "j")
    assert (panel.cursor, panel.selected_id) == (2, "t3")
    press(nav, "end", "down")
    assert (panel.cursor, panel.selected_id) == (3, "t4")
    press(nav, "pageup")
    assert (panel.cursor, panel.selected_id) == (0, "t1")
    press(nav, "up", "k")
    assert panel.cursor == 0


@pytest.mark.asyncio
async def test_overlays_push_and_pop(nav) -> None:
    assert press(nav, "escape") == [False]
    assert nav.kinds == LIST

    press(nav, "enter")
    assert nav.kinds == LIST + [PanelKind.DETAILS]
    press(nav, "right")
    assert nav.focus.torrent_id == "t2"
    press(nav, "left", "left")
    assert nav.focus.torrent_id == "t1"

    press(nav, "t")
    assert nav.kinds == LIST + [PanelKind.DETAILS, PanelKind.TRACKERS]
    press(nav, "down")
    assert nav.focus.cursor == 0
    press(nav, "q", "escape")
    assert nav.kinds == LIST


@pytest.mark.asyncio
async def test_error_view_aggregates_torrent_and_tracker_errors(nav) -> None:
    assert press(nav, "e") == [False]
    assert nav.kinds == LIST

    press(nav, "down", "e")
    assert isinstance(nav.focus, ErrorViewPanel)
    assert nav.focus.lines == ["open.other.org: timed out"]
    press(nav, "backspace")

    press(nav, "end", "e")
    assert nav.focus.lines == ["disk full"]
    press(nav, "enter")
    assert nav.kinds == LIST


@pytest.mark.asyncio
async def test_filter_input_owns_every_key(nav) -> None:
    panel = nav.root
    press(nav, "/")
    assert nav.focus.kind is PanelKind.FILTER_INPUT

    press(nav, "d", "e", "b")
    assert nav.view.text == "deb"
    assert nav.rows == ("t2",)

    press(nav, "j", "s")
    assert nav.view.text == "debjs"
    assert nav.rows == ()
    assert nav.focus.kind is PanelKind.FILTER_INPUT

    press(nav, "backspace", "backspace", "home", "delete")
    assert nav.view.text == "eb"
    assert panel.selected_id == "t2"

    press(nav, "end", "ctrl+t", "I")
    assert nav.view.case_sensitive
    assert nav.rows == ()
    press(nav, "ctrl+t")
    assert nav.rows == ("t2",)

    press(nav, "enter")
    assert nav.kinds == LIST
    assert nav.view.text == "ebI"

    press(nav, "escape")
    assert nav.view.text == ""
    assert nav.rows == ("t1", "t2", "t3", "t4")


@pytest.mark.asyncio
async def test_sort_modes_cycle_and_keep_selection(nav) -> None:
    panel = nav.root
    nav.rows

    press(nav, "s")
    assert nav.sort_mode == "name"
    assert nav.rows == ("t3", "t4", "t2", "t1")
    assert (panel.cursor, panel.selected_id) == (3, "t1")

    press(nav, "s")
    assert nav.rows == ("t4", "t2", "t1", "t3")
    press(nav, "s")
    assert nav.rows == ("t3", "t2", "t4", "t1")
    press(nav, "s")
    assert nav.sort_mode == "none"
    assert nav.rows == ("t1", "t2", "t3", "t4")


@pytest.mark.asyncio
async def test_limits_commit_sends_bytes_and_pops(nav, daemon) -> None:
    press(nav, "down", "l")
    limits = nav.focus
    assert isinstance(limits, LimitsPanel)
    assert limits.fields == ["10", ""]

    press(nav, "5", "x", "tab", "-", "1", "-")
    assert limits.fields == ["105", "-1"]
    press(nav, "enter")
    assert limits.pending is not None

    await wait_until(lambda: nav.kinds == LIST)
    request = daemon.current.requests("set_throttle")[0]
    assert request["params"] == {"id": "t2", "throttle_up": 105 * 1024, "throttle_down": -1}


@pytest.mark.asyncio
async def test_limits_reject_bad_input_without_request(nav, daemon) -> None:
    press(nav, "l", "backspace", "-", "enter")
    assert nav.focus.kind is PanelKind.LIMITS
    assert nav.focus.error
    assert not daemon.current.requests("set_throttle")


@pytest.mark.asyncio
async def test_limits_failure_is_shown_inline(nav, sync, daemon) -> None:
    daemon.hold.add("set_throttle")
    press(nav, "l", "enter")
    limits = nav.focus
    handle = limits.pending
    await wait_until(lambda: daemon.current.requests("set_throttle"))

    daemon.current.reply(handle.request_id, error="throttle out of range")
    await wait_until(lambda: limits.error is not None)

    assert nav.focus is limits
    assert limits.pending is None
    assert "throttle out of range" in limits.error


@pytest.mark.asyncio
async def test_closing_limits_cancels_its_request(nav, sync, daemon) -> None:
    daemon.hold.add("set_throttle")
    press(nav, "l", "enter")
    handle = nav.focus.pending

    press(nav, "escape")

    assert nav.kinds == LIST
    with pytest.raises(RequestCancelled):
        await handle
    await asyncio.sleep(0)
    assert sync.pending_count == 0


@pytest.mark.asyncio
async def test_disconnect_during_limits_commit_returns_to_list(nav, sync, daemon) -> None:
    daemon.hold.add("set_throttle")
    press(nav, "down", "l", "backspace", "backspace", "7", "enter")
    handle = nav.focus.pending
    await wait_until(lambda: daemon.current.requests("set_throttle"))
    daemon.hold.clear()

    daemon.current.drop()

    with pytest.raises(RequestCancelled):
        await handle
    assert nav.kinds == LIST
    assert sync.snapshot.torrents["t2"].throttle_up == 10 * 1024
    await wait_until(lambda: sync.state is ConnectionState.LIVE)
    assert nav.kinds == LIST
    assert sync.snapshot.torrents["t2"].throttle_up == 10 * 1024


@pytest.mark.asyncio
async def test_removed_torrent_closes_its_overlays(nav, daemon) -> None:
    press(nav, "enter", "t")
    daemon.current.push("torrent", "t1", operation="remove")

    await wait_until(lambda: "t1" not in nav.snapshot.torrents)

    assert nav.kinds == LIST
    assert nav.rows == ("t2", "t3", "t4")
    assert nav.root.selected_id == "t2"


@pytest.mark.asyncio
async def test_space_pauses_and_resumes(nav, daemon) -> None:
    press(nav, "space")
    await wait_until(lambda: daemon.current.requests("pause"))
    assert daemon.current.requests("pause")[0]["params"] == {"id": "t1"}
    await wait_until(lambda: nav.root.pending is None)
    assert nav.root.message is None

    daemon.current.push("torrent", "t1", status="paused")
    await wait_until(lambda: nav.snapshot.torrents["t1"].status.value == "paused")
    press(nav, "space")
    await wait_until(lambda: daemon.current.requests("resume"))


@pytest.mark.asyncio
async def test_logout_returns_to_login(nav, sync) -> None:
    press(nav, "enter", "ctrl+l")
    assert nav.kinds == LIST + [PanelKind.DETAILS]

    press(nav, "escape", "ctrl+l")
    await wait_until(lambda: sync.state is ConnectionState.DISCONNECTED)

    assert nav.kinds == [PanelKind.LOGIN]
    assert nav.root.error is None
    assert not nav.snapshot.torrents
