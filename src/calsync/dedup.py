"""Deduplicator: collapses the same logical event reported by several sources.

Two events are duplicates when their normalized titles match and their time
windows overlap (or are identical).  Title plus time window is the primary
key; attendee/location similarity and the source natural key only decide which
candidate group an event joins when several qualify.  Two events from the
same source and account that carry *different* natural keys are distinct
events (for example two separate "Standup" entries in one calendar) and are
never merged.

The sweep sorts by start time and keeps a heap of active groups ordered by
end time, so each event is compared only with groups still open at its start.
Open groups are indexed by natural key, by the identities that hold a key in
them and by attendee/location fingerprint, so the usual case of many
same-titled blocks from one calendar costs ``O(n log n)`` overall.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from calsync.models import SOURCE_PRIORITY, Event


def normalize_title(title: str) -> str:
    return " ".join(title.casefold().split())


def _identity(event: Event) -> tuple[str, str]:
    return event.source.value, (event.source_account_email or "").casefold()


def _fingerprint(event: Event) -> set[str]:
    tokens = {a.casefold() for a in event.attendees}
    if event.location:
        tokens.add("@" + " ".join(event.location.casefold().split()))
    return tokens


def _similarity(left: set[str], right: set[str]) -> float:
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def richness(event: Event) -> int:
    return sum(
        (
            event.description is not None,
            event.location is not None,
            bool(event.attendees),
            event.calendar_name is not None,
        )
    )


def preference_key(event: Event) -> tuple[int, int, int, str]:
    """Sort key: lower sorts first, so the preferred copy is ``min()``."""
    return (
        -SOURCE_PRIORITY[event.source],
        0 if event.source_account_email else 1,
        -richness(event),
        event.id,
    )


@dataclass
class _Group:
    gid: int
    start: datetime
    end: datetime
    members: list[Event] = field(default_factory=list)
    # identity -> the one natural key that identity carries in this group
    keys: dict[tuple[str, str], str] = field(default_factory=dict)
    fingerprints: set[frozenset[str]] = field(default_factory=set)

    def add(self, event: Event) -> None:
        self.members.append(event)
        if event.natural_key:
            self.keys.setdefault(_identity(event), event.natural_key)
        self.fingerprints.add(frozenset(_fingerprint(event)))

    def overlaps(self, event: Event) -> bool:
        if event.start_date < self.end:
            return True
        return event.start_date == self.start and event.end_date == self.end

    def accepts(self, event: Event) -> bool:
        if not event.natural_key:
            return True
        key = self.keys.get(_identity(event))
        return key is None or key == event.natural_key

    def affinity(self, event: Event) -> tuple[int, float]:
        key_match = 1 if event.natural_key and event.natural_key in self.keys.values() else 0
        fp = _fingerprint(event)
        best = max(_similarity(fp, set(other)) for other in self.fingerprints)
        return key_match, best


class _OpenGroups:
    """Open groups sharing one normalized title, indexed for candidate lookup."""

    def __init__(self) -> None:
        self.groups: dict[int, _Group] = {}
        self._by_key: dict[str, set[int]] = {}
        self._claimed: dict[tuple[str, str], set[int]] = {}
        self._by_fingerprint: dict[frozenset[str], set[int]] = {}

    def add(self, group: _Group, event: Event) -> None:
        group.add(event)
        self.groups[group.gid] = group
        if event.natural_key:
            self._by_key.setdefault(event.natural_key, set()).add(group.gid)
            self._claimed.setdefault(_identity(event), set()).add(group.gid)
        self._by_fingerprint.setdefault(frozenset(_fingerprint(event)), set()).add(group.gid)

    def close(self, gid: int) -> None:
        group = self.groups.pop(gid)
        for ident, key in group.keys.items():
            self._by_key[key].discard(gid)
            self._claimed[ident].discard(gid)
        for fp in group.fingerprints:
            self._by_fingerprint[fp].discard(gid)

    def _usable(self, gids: Iterable[int], event: Event, skip: set[int]) -> list[_Group]:
        found = []
        for gid in sorted(gids):
            group = self.groups[gid]
            if gid not in skip and group.overlaps(event) and group.accepts(event):
                found.append(group)
        return found

    def candidates(self, event: Event) -> list[_Group]:
        """Groups *event* may join, narrowed to those with the best possible affinity.

        A shared natural key outranks any fingerprint match, and an identical
        fingerprint is the best similarity, so each tier is returned whole as
        soon as it is non-empty.
        """
        claimed: set[int] = set()
        if event.natural_key:
            found = self._usable(self._by_key.get(event.natural_key, ()), event, claimed)
            if found:
                return found
            # groups holding another key of this identity can never take the event
            claimed = self._claimed.get(_identity(event), set())
            if len(claimed) == len(self.groups):
                return []
        fp = frozenset(_fingerprint(event))
        found = self._usable(self._by_fingerprint.get(fp, ()), event, claimed)
        if found:
            return found
        return self._usable(self.groups, event, claimed)


class Deduplicator:
    """Groups duplicate events and keeps the preferred copy of each group."""

    def dedupe(self, events: Iterable[Event]) -> list[Event]:
        ordered = sorted(events, key=lambda e: (e.start_date, e.end_date, e.id))
        groups: list[_Group] = []
        open_by_title: dict[str, _OpenGroups] = {}
        expiry: list[tuple[datetime, int, str]] = []

        for event in ordered:
            while expiry and expiry[0][0] < event.start_date:
                end, gid, title = heapq.heappop(expiry)
                bucket = open_by_title.get(title)
                group = bucket.groups.get(gid) if bucket else None
                # stale entry when the group's end was extended later
                if bucket is not None and group is not None and group.end == end:
                    bucket.close(gid)

            title = normalize_title(event.title)
            bucket = open_by_title.setdefault(title, _OpenGroups())
            candidates = bucket.candidates(event)
            if candidates:
                target = max(candidates, key=lambda g: (*g.affinity(event), -g.gid))
                bucket.add(target, event)
                if event.end_date > target.end:
                    target.end = event.end_date
                    heapq.heappush(expiry, (target.end, target.gid, title))
                continue

            group = _Group(gid=len(groups), start=event.start_date, end=event.end_date)
            groups.append(group)
            bucket.add(group, event)
            heapq.heappush(expiry, (group.end, group.gid, title))

        winners = [min(g.members, key=preference_key) for g in groups]
        winners.sort(key=lambda e: (e.start_date, e.end_date, normalize_title(e.title), e.id))
        return winners


def dedupe(events: Iterable[Event]) -> list[Event]:
    return Deduplicator().dedupe(events)
