"""
Build reference domain models.

Pure data structures describing known SQL Server builds: versions, the
Service Pack / Cumulative Update lineage of each release family, and the
answers the resolver gives about them. No I/O happens here; the reference
store in the infrastructure layer loads and persists these models.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from functools import total_ordering
from typing import Any

STALENESS_WINDOW = timedelta(days=45)

_SP_LABEL = re.compile(r"^SP(\d+)$", re.IGNORECASE)


def normalize_kb(kb: str | int) -> str:
    """Return a KB identifier as bare digits ("KB4535706" -> "4535706")."""
    text = str(kb).strip()
    if text.upper().startswith("KB"):
        text = text[2:]
    if not text.isdigit():
        raise ValueError(f"Invalid KB identifier: {kb!r}")
    return text


def sp_rank(label: str | None) -> int | None:
    """Numeric rank of a Service Pack label: RTM -> 0, SP3 -> 3."""
    if not label:
        return None
    if label.upper() == "RTM":
        return 0
    match = _SP_LABEL.match(label)
    return int(match.group(1)) if match else None


@total_ordering
@dataclass(frozen=True, eq=False)
class BuildVersion:
    """
    Numeric SQL Server build (major.minor.build[.revision]).

    The reference index is keyed on three parts while instances report four,
    so equality and ordering only use (major, minor, build). The revision is
    kept for display.
    """

    major: int
    minor: int
    build: int = 0
    revision: int | None = None

    @classmethod
    def parse(cls, value: str | BuildVersion) -> BuildVersion:
        if isinstance(value, BuildVersion):
            return value
        parts = str(value).strip().split(".")
        if not 2 <= len(parts) <= 4 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid build version: {value!r}")
        numbers = [int(p) for p in parts]
        return cls(
            major=numbers[0],
            minor=numbers[1],
            build=numbers[2] if len(numbers) > 2 else 0,
            revision=numbers[3] if len(numbers) > 3 else None,
        )

    @property
    def key(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.build)

    @property
    def family(self) -> str:
        """Release family key, e.g. "15.0" or "10.50"."""
        return f"{self.major}.{self.minor}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BuildVersion):
            return NotImplemented
        return self.key == other.key

    def __lt__(self, other: BuildVersion) -> bool:
        if not isinstance(other, BuildVersion):
            return NotImplemented
        return self.key < other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.build}"
        if self.revision is not None:
            text += f".{self.revision}"
        return text


def _label(value: Any) -> str | None:
    # Some published reference files list several labels for one build
    # (e.g. ["SP4", "LATEST"]); the first real SP/CU label wins.
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        for item in value:
            if item and str(item).upper() != "LATEST":
                return str(item)
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class BuildRecord:
    """
    One row of the build reference table.

    A record that omits its SP or CU label inherits the running context of
    its family (e.g. a security update released on top of CU12).
    """

    version: BuildVersion
    service_pack: str | None = None
    cumulative_update: str | None = None
    kb_list: frozenset[str] = field(default_factory=frozenset)
    supported_until: date | None = None
    retired: bool = False
    family_name: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuildRecord:
        """Build a record from the reference file format (Version/SP/CU/KBList/...)."""
        if "Version" not in data:
            raise ValueError(f"Build reference entry without Version: {data!r}")
        kbs = data.get("KBList") or []
        if isinstance(kbs, (str, int)):
            kbs = [kbs]
        supported = data.get("SupportedUntil")
        if supported:
            supported = datetime.fromisoformat(str(supported)[:10]).date()
        return cls(
            version=BuildVersion.parse(data["Version"]),
            service_pack=_label(data.get("SP")),
            cumulative_update=_label(data.get("CU")),
            kb_list=frozenset(normalize_kb(kb) for kb in kbs),
            supported_until=supported or None,
            retired=bool(data.get("Retired", False)),
            family_name=_label(data.get("Name")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"Version": str(self.version)}
        if self.family_name:
            data["Name"] = self.family_name
        if self.service_pack:
            data["SP"] = self.service_pack
        if self.cumulative_update:
            data["CU"] = self.cumulative_update
        if self.kb_list:
            data["KBList"] = sorted(self.kb_list)
        if self.supported_until:
            data["SupportedUntil"] = self.supported_until.isoformat()
        if self.retired:
            data["Retired"] = True
        return data


class BuildTable:
    """
    Immutable, versioned table of known builds grouped by release family.

    Records of one family are kept in ascending version order and SP labels
    never decrease along that order. Refreshing the reference data produces
    a new table; an existing one is never modified.
    """

    def __init__(
        self,
        records: Iterable[BuildRecord],
        last_updated: datetime | None = None,
    ):
        groups: dict[str, list[BuildRecord]] = {}
        for record in records:
            groups.setdefault(record.version.family, []).append(record)

        self._families: dict[str, tuple[BuildRecord, ...]] = {}
        for family, items in groups.items():
            items.sort(key=lambda r: r.version)
            self._validate_family(family, items)
            self._families[family] = tuple(items)

        self.last_updated = last_updated

    @staticmethod
    def _validate_family(family: str, records: list[BuildRecord]) -> None:
        highest = -1
        previous: BuildVersion | None = None
        for record in records:
            if previous is not None and record.version == previous:
                raise ValueError(f"Duplicate build {record.version} in family {family}")
            previous = record.version
            rank = sp_rank(record.service_pack)
            if rank is None:
                continue
            if rank < highest:
                raise ValueError(
                    f"Service Pack order violated in family {family} at {record.version}"
                )
            highest = rank

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> BuildTable:
        """Parse the cache file structure {"LastUpdated": ..., "Data": [...]}."""
        if not isinstance(payload, dict) or not isinstance(payload.get("Data"), list):
            raise ValueError("Build reference payload must contain a 'Data' list")
        last_updated = payload.get("LastUpdated")
        if last_updated:
            last_updated = datetime.fromisoformat(str(last_updated).replace("Z", "+00:00"))
            if last_updated.tzinfo is None:
                last_updated = last_updated.replace(tzinfo=timezone.utc)
        records = [BuildRecord.from_dict(item) for item in payload["Data"]]
        return cls(records, last_updated=last_updated or None)

    def to_payload(self) -> dict[str, Any]:
        return {
            "LastUpdated": self.last_updated.isoformat() if self.last_updated else None,
            "Data": [record.to_dict() for record in self.all_records()],
        }

    def families(self) -> list[str]:
        return sorted(self._families, key=lambda f: BuildVersion.parse(f).key)

    def records_for(self, family: str) -> tuple[BuildRecord, ...]:
        """Records of a family ("15.0") in ascending version order."""
        return self._families.get(family, ())

    def all_records(self) -> list[BuildRecord]:
        return [r for family in self.families() for r in self._families[family]]

    def family_by_name(self, name: str) -> str | None:
        """Map a marketing name ("2008R2", "2019") to its family key."""
        wanted = name.replace(" ", "").upper()
        for family, records in self._families.items():
            for record in records:
                if record.family_name and record.family_name.replace(" ", "").upper() == wanted:
                    return family
        return None

    def name_for_family(self, family: str) -> str | None:
        for record in self.records_for(family):
            if record.family_name:
                return record.family_name
        return None

    def age(self, now: datetime | None = None) -> timedelta | None:
        if self.last_updated is None:
            return None
        now = now or datetime.now(timezone.utc)
        return now - self.last_updated

    def is_stale(
        self, now: datetime | None = None, window: timedelta = STALENESS_WINDOW
    ) -> bool:
        age = self.age(now)
        return age is None or age > window

    def __len__(self) -> int:
        return sum(len(records) for records in self._families.values())

    def __repr__(self) -> str:
        return f"BuildTable(families={len(self._families)}, records={len(self)}, last_updated={self.last_updated})"


class MatchType(Enum):
    """How closely a resolver answer matches the query."""

    EXACT = "Exact"
    APPROXIMATE = "Approximate"


@dataclass(frozen=True)
class ResolvedBuild:
    """
    Resolver answer for one query.

    service_pack and cumulative_update are the accumulated labels at the
    matched record, which may differ from the record's own (empty) labels.
    """

    match_type: MatchType
    record: BuildRecord
    service_pack: str | None = None
    cumulative_update: str | None = None
    family_name: str | None = None
    warning: str | None = None

    @property
    def version(self) -> BuildVersion:
        return self.record.version

    @property
    def kb_list(self) -> frozenset[str]:
        return self.record.kb_list

    @property
    def retired(self) -> bool:
        return self.record.retired

    @property
    def supported_until(self) -> date | None:
        return self.record.supported_until

    @property
    def is_exact(self) -> bool:
        return self.match_type is MatchType.EXACT

    @property
    def level(self) -> str:
        """Human-readable patch level, e.g. "SP2 CU17"."""
        return " ".join(p for p in (self.service_pack, self.cumulative_update) if p) or "unknown"
