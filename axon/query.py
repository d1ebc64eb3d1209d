"""Filter queries typed into the torrent list.

A query is a whitespace separated list of tokens, all of which must match:

``t:<text>``
    a tracker host of the torrent contains ``<text>``
``s<sign><MiB>``
    torrent size compared with ``<MiB>``; sign is ``<``, ``>`` (strict) or ``:`` (exact)
``s:<codes>``
    status is one of the coded statuses: ``i`` idle, ``s`` seeding, ``l`` leeching,
    ``e`` error, ``p`` paused, ``pe`` pending, ``h`` hashing, ``m`` magnet
``p<sign><percent>``
    progress compared with ``<percent>``

Every other token, including malformed specifiers such as ``s:zz`` or ``p>``,
matches torrents whose name contains it.
"""

from __future__ import annotations

import enum
import functools
import operator
import re
from dataclasses import dataclass
from typing import Callable, Tuple, Union

from .mirror import Snapshot
from .models import Status, Torrent


_NUMBER = re.compile(r"\d+(?:\.\d+)?")

# longest codes first so that "pe" wins over "p"
_STATUS_CODES = (
    ("pe", Status.PENDING),
    ("i", Status.IDLE),
    ("s", Status.SEEDING),
    ("l", Status.LEECHING),
    ("e", Status.ERROR),
    ("p", Status.PAUSED),
    ("h", Status.HASHING),
    ("m", Status.MAGNET),
)


class Comparison(str, enum.Enum):
    LT = "<"
    GT = ">"
    EQ = ":"

    @property
    def compare(self) -> Callable[[float, float], bool]:
        return _COMPARE[self]


_COMPARE = {Comparison.LT: operator.lt, Comparison.GT: operator.gt, Comparison.EQ: operator.eq}


def _fold(text: str, case_sensitive: bool) -> str:
    return text if case_sensitive else text.lower()


@dataclass(frozen=True)
class NameContains:
    needle: str
    case_sensitive: bool

    def test(self, torrent: Torrent, snapshot: Snapshot) -> bool:
        return self.needle in _fold(torrent.name, self.case_sensitive)


@dataclass(frozen=True)
class TrackerContains:
    needle: str
    case_sensitive: bool

    def test(self, torrent: Torrent, snapshot: Snapshot) -> bool:
        return any(self.needle in _fold(host, self.case_sensitive) for host in snapshot.tracker_hosts(torrent))


@dataclass(frozen=True)
class SizeCompare:
    op: Comparison
    megabytes: float

    def test(self, torrent: Torrent, snapshot: Snapshot) -> bool:
        size = torrent.size_mb
        return size is not None and self.op.compare(size, self.megabytes)


@dataclass(frozen=True)
class ProgressCompare:
    op: Comparison
    percent: float

    def test(self, torrent: Torrent, snapshot: Snapshot) -> bool:
        return self.op.compare(torrent.progress, self.percent)


@dataclass(frozen=True)
class StatusIn:
    statuses: frozenset

    def test(self, torrent: Torrent, snapshot: Snapshot) -> bool:
        return torrent.status in self.statuses


Clause = Union[NameContains, TrackerContains, SizeCompare, ProgressCompare, StatusIn]


@dataclass(frozen=True)
class FilterQuery:
    source: str
    clauses: Tuple[Clause, ...]
    case_sensitive: bool

    def matches(self, torrent: Torrent, snapshot: Snapshot) -> bool:
        return all(clause.test(torrent, snapshot) for clause in self.clauses)

    @property
    def empty(self) -> bool:
        return not self.clauses


def decode_status_codes(codes: str) -> frozenset | None:
    """Decode a run like ``"sl"``; None when any part is not a status code."""
    if not codes:
        return None
    found = set()
    pos = 0
    while pos < len(codes):
        for code, status in _STATUS_CODES:
            if codes.startswith(code, pos):
                found.add(status)
                pos += len(code)
                break
        else:
            return None
    return frozenset(found)


def _specifier(token: str, case_sensitive: bool) -> Clause | None:
    if len(token) < 3:
        return None
    name, sign, content = token[0], token[1], token[2:]
    if name == "t" and sign == ":":
        return TrackerContains(_fold(content, case_sensitive), case_sensitive)
    if sign not in "<>:":
        return None
    if name == "p" and _NUMBER.fullmatch(content):
        return ProgressCompare(Comparison(sign), float(content))
    if name == "s":
        if _NUMBER.fullmatch(content):
            return SizeCompare(Comparison(sign), float(content))
        if sign == ":":
            statuses = decode_status_codes(content)
            if statuses:
                return StatusIn(statuses)
    return None


@functools.lru_cache(maxsize=256)
def compile_query(text: str, case_sensitive: bool = False) -> FilterQuery:
    clauses = []
    for token in text.split():
        clause = _specifier(token, case_sensitive)
        if clause is None:
            clause = NameContains(_fold(token, case_sensitive), case_sensitive)
        clauses.append(clause)
    return FilterQuery(text, tuple(clauses), case_sensitive)


def evaluate(query: FilterQuery, snapshot: Snapshot) -> tuple[str, ...]:
    """Matching torrent ids in mirror order."""
    if query.empty:
        return tuple(snapshot.torrents)
    return tuple(tid for tid, torrent in snapshot.torrents.items() if query.matches(torrent, snapshot))


class FilterView:
    """Filter text plus the last evaluation, redone when an input changes."""

    def __init__(self, text: str = "", case_sensitive: bool = False):
        self._text = text
        self._case_sensitive = case_sensitive
        self.query = compile_query(text, case_sensitive)
        self._key: tuple[int, FilterQuery] | None = None
        self._ids: tuple[str, ...] = ()
        self.evaluations = 0

    @property
    def text(self) -> str:
        return self._text

    @property
    def case_sensitive(self) -> bool:
        return self._case_sensitive

    def set_text(self, text: str) -> None:
        if text != self._text:
            self._text = text
            self.query = compile_query(text, self._case_sensitive)

    def toggle_case(self) -> bool:
        self._case_sensitive = not self._case_sensitive
        self.query = compile_query(self._text, self._case_sensitive)
        return self._case_sensitive

    def ids(self, snapshot: Snapshot) -> tuple[str, ...]:
        key = (snapshot.version, self.query)
        if key != self._key:
            self._ids = evaluate(self.query, snapshot)
            self._key = key
            self.evaluations += 1
        return self._ids
