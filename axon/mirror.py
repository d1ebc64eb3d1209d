"""Local mirror of the daemon's resources.

The mirror has a single writer (the synchronizer). Readers never touch the
working maps: they get a :class:`Snapshot`, an immutable view built from copies
of the maps, which is swapped in as a whole after each applied update.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Iterable, Mapping

from .errors import ProtocolError
from .logging import get_logger
from .models import Operation, ResourceKind, ServerStats, Torrent, Tracker, Update


LOG = get_logger(__name__)

_EMPTY: Mapping = MappingProxyType({})


@dataclass(frozen=True)
class Snapshot:
    version: int = 0
    torrents: Mapping[str, Torrent] = field(default_factory=lambda: _EMPTY)
    trackers: Mapping[str, Tracker] = field(default_factory=lambda: _EMPTY)
    server: ServerStats = field(default_factory=ServerStats)

    def tracker_hosts(self, torrent: Torrent) -> list[str]:
        # ids the mirror has not seen yet are matched by their own text
        hosts = []
        for tracker_id in sorted(torrent.trackers):
            tracker = self.trackers.get(tracker_id)
            hosts.append(tracker.display_host if tracker else tracker_id)
        return hosts

    def trackers_of(self, torrent: Torrent) -> list[Tracker]:
        found = []
        for tracker_id in sorted(torrent.trackers):
            tracker = self.trackers.get(tracker_id)
            if tracker is not None:
                found.append(tracker)
        return found

    def errors_of(self, torrent: Torrent) -> list[str]:
        """Torrent error first, then one line per failing tracker."""
        errors = []
        if torrent.error_message:
            errors.append(torrent.error_message)
        for tracker in self.trackers_of(torrent):
            if tracker.error:
                errors.append(f"{tracker.display_host}: {tracker.error}")
        return errors


class StateMirror:
    def __init__(self) -> None:
        self._torrents: dict[str, Torrent] = {}
        self._trackers: dict[str, Tracker] = {}
        self._server = ServerStats()
        self._version = 0
        self._snapshot = Snapshot()

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._version

    def apply_update(self, update: Update) -> Snapshot:
        self._apply(update)
        self._version += 1
        return self._publish()

    def apply_updates(self, updates: Iterable[Update]) -> Snapshot:
        """Apply a batch, one atomic mutation per update, publishing once.

        An update that fails validation is skipped; the rest of the batch still applies.
        """
        applied = 0
        for update in updates:
            try:
                self._apply(update)
            except ProtocolError as exc:
                LOG.warning("Dropping update %s %s: %s", update.kind.value, update.id, exc)
                continue
            self._version += 1
            applied += 1
        if applied:
            self._publish()
        return self._snapshot

    def replace(self, resources: Iterable[Update]) -> Snapshot:
        """Swap in a full snapshot; resources missing from it are dropped."""
        torrents: dict[str, Torrent] = {}
        trackers: dict[str, Tracker] = {}
        server = ServerStats()
        for res in resources:
            if res.operation is not Operation.UPSERT:
                raise ProtocolError(f"snapshot entry {res.kind.value} {res.id} is not an upsert")
            if res.kind is ResourceKind.TORRENT:
                torrents[res.id] = torrents.get(res.id, Torrent(id=res.id)).merge(res.fields)
            elif res.kind is ResourceKind.TRACKER:
                trackers[res.id] = trackers.get(res.id, Tracker(id=res.id)).merge(res.fields)
            else:
                server = replace(server, id=res.id).merge(res.fields)
        self._torrents = torrents
        self._trackers = trackers
        self._server = server
        self._version += 1
        LOG.info("Mirror replaced: %d torrents, %d trackers (version %d)", len(torrents), len(trackers), self._version)
        return self._publish()

    def clear(self) -> Snapshot:
        return self.replace(())

    def _apply(self, update: Update) -> None:
        # every new value is built before anything is written back
        if update.kind is ResourceKind.TORRENT:
            if update.operation is Operation.UPSERT:
                current = self._torrents.get(update.id) or Torrent(id=update.id)
                self._torrents[update.id] = current.merge(update.fields)
            else:
                self._remove_torrent(update.id)
        elif update.kind is ResourceKind.TRACKER:
            if update.operation is Operation.UPSERT:
                current = self._trackers.get(update.id) or Tracker(id=update.id)
                self._trackers[update.id] = current.merge(update.fields)
            else:
                self._remove_tracker(update.id)
        elif update.operation is Operation.UPSERT:
            self._server = replace(self._server, id=update.id).merge(update.fields)
        else:
            self._server = ServerStats()

    def _remove_torrent(self, torrent_id: str) -> None:
        if self._torrents.pop(torrent_id, None) is None:
            LOG.debug("Remove for unknown torrent %s", torrent_id)
        for tracker_id, tracker in list(self._trackers.items()):
            if torrent_id in tracker.torrent_ids:
                self._trackers[tracker_id] = replace(tracker, torrent_ids=tracker.torrent_ids - {torrent_id})

    def _remove_tracker(self, tracker_id: str) -> None:
        if self._trackers.pop(tracker_id, None) is None:
            LOG.debug("Remove for unknown tracker %s", tracker_id)
        for torrent_id, torrent in list(self._torrents.items()):
            if tracker_id in torrent.trackers:
                self._torrents[torrent_id] = replace(torrent, trackers=torrent.trackers - {tracker_id})

    def _publish(self) -> Snapshot:
        self._snapshot = Snapshot(
            version=self._version,
            torrents=MappingProxyType(dict(self._torrents)),
            trackers=MappingProxyType(dict(self._trackers)),
            server=self._server,
        )
        return self._snapshot
