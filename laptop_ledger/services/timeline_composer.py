from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Union

from laptop_ledger.schemas.records import LoanEventRecord
from laptop_ledger.services.identity_resolver import normalize_name

CLASSROOM_INDICATORS = ("classroom", "salon", "aula")
_INDICATOR_PREFIX = re.compile(r"^\s*(classroom|sal[oó]n|aula)\b[\s:#\-]*", re.IGNORECASE)
DEFAULT_GROUP_LABEL = "Classroom"


def is_classroom_event(event: LoanEventRecord) -> bool:
    if (event.classroom or "").strip():
        return True
    destination = normalize_name(event.destination)
    if any(word in destination for word in CLASSROOM_INDICATORS):
        return True
    return "classroom" in normalize_name(event.purpose)


def classroom_label_for(event: LoanEventRecord) -> str:
    label = (event.classroom or "").strip()
    if label:
        return label
    stripped = _INDICATOR_PREFIX.sub("", event.destination or "").strip()
    return stripped or DEFAULT_GROUP_LABEL


def _recency(event: LoanEventRecord) -> datetime:
    return event.loanedAt


def display_name_for(event: LoanEventRecord, item_names: Mapping[str, str] | None = None) -> str:
    if item_names and item_names.get(event.itemRef):
        return item_names[event.itemRef]
    return event.itemDisplayName or event.itemRef


@dataclass
class ClassroomGroup:
    label: str
    events: list[LoanEventRecord] = field(default_factory=list)
    latest: datetime | None = None
    active_count: int = 0
    kind: str = "classroom"


@dataclass
class IndividualEntry:
    event: LoanEventRecord
    latest: datetime
    display_name: str
    kind: str = "individual"


@dataclass
class BorrowerGroup:
    borrower_key: str
    events: list[LoanEventRecord] = field(default_factory=list)
    latest: datetime | None = None
    active_count: int = 0


TimelineEntry = Union[ClassroomGroup, IndividualEntry]


def compose_timeline(
    events: Iterable[LoanEventRecord],
    item_names: Mapping[str, str] | None = None,
) -> list[TimelineEntry]:
    """Interleave classroom groups and individual loans, most recent first.

    A group sorts by its newest member; members are listed newest first.
    """
    groups: dict[str, ClassroomGroup] = {}
    entries: list[TimelineEntry] = []
    for event in events:
        if is_classroom_event(event):
            label = classroom_label_for(event)
            group = groups.get(label)
            if group is None:
                group = groups[label] = ClassroomGroup(label=label)
                entries.append(group)
            group.events.append(event)
        else:
            entries.append(
                IndividualEntry(
                    event=event,
                    latest=_recency(event),
                    display_name=display_name_for(event, item_names),
                )
            )

    for group in groups.values():
        group.events.sort(key=_recency, reverse=True)
        group.latest = _recency(group.events[0])
        group.active_count = sum(1 for event in group.events if event.is_open)

    entries.sort(key=lambda entry: entry.latest, reverse=True)
    return entries


def group_by_borrower(events: Iterable[LoanEventRecord]) -> list[BorrowerGroup]:
    groups: dict[str, BorrowerGroup] = {}
    for event in events:
        group = groups.setdefault(event.borrowerKey, BorrowerGroup(borrower_key=event.borrowerKey))
        group.events.append(event)
    for group in groups.values():
        group.events.sort(key=_recency, reverse=True)
        group.latest = _recency(group.events[0])
        group.active_count = sum(1 for event in group.events if event.is_open)
    return sorted(groups.values(), key=lambda group: group.latest, reverse=True)
