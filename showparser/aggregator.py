"""Merge per-image candidates into one deduplicated dataset.

``aggregate`` is pure and order independent: any permutation of the same
candidates yields an identical dataset. Records are keyed by a normalized
identity per kind; records that share a key are merged field by field, the
most confident contribution winning.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from showparser.models import (
    AggregatedDataset,
    CandidateKind,
    DatasetRecord,
    DjRecord,
    ExtractionCandidate,
    ShowRecord,
    VendorRecord,
    VenueRecord,
)

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

# Identity fields per kind, in key order.
IDENTITY_FIELDS = {
    CandidateKind.VENDOR: ("name",),
    CandidateKind.DJ: ("name",),
    CandidateKind.VENUE: ("name", "city", "state"),
    CandidateKind.SHOW: ("venue", "city", "state", "day", "time"),
}

_RECORD_TYPES = {
    CandidateKind.VENDOR: VendorRecord,
    CandidateKind.DJ: DjRecord,
    CandidateKind.VENUE: VenueRecord,
    CandidateKind.SHOW: ShowRecord,
}

# Fields each record type accepts from a candidate.
_RECORD_FIELDS = {
    kind: frozenset(record_type.model_fields) - frozenset(DatasetRecord.model_fields)
    for kind, record_type in _RECORD_TYPES.items()
}

Key = tuple[str, ...]


def normalize(value: Optional[str]) -> str:
    """Case-fold, spell out ``&``, drop punctuation and collapse whitespace."""
    if not value:
        return ""
    text = value.casefold().replace("&", " and ")
    text = _PUNCTUATION.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()
    return text or value.strip().casefold()


def identity_key(kind: CandidateKind, fields: dict) -> Key:
    return tuple(normalize(fields.get(name)) for name in IDENTITY_FIELDS[kind])


@dataclass(frozen=True)
class _Contribution:
    fields: tuple[tuple[str, str], ...]
    confidence: float
    sources: tuple[str, ...]

    @classmethod
    def of(cls, fields: dict, confidence: float, sources: Iterable[str]) -> "_Contribution":
        cleaned = tuple(sorted((k, v) for k, v in fields.items() if v))
        return cls(cleaned, confidence, tuple(sorted(set(sources))))

    def rank(self) -> tuple:
        # Highest confidence first; the rest only breaks ties deterministically.
        return (-self.confidence, self.sources, self.fields)


def _merge(contributions: list[_Contribution]) -> tuple[dict[str, str], float, list[str]]:
    ranked = sorted(contributions, key=_Contribution.rank)
    merged: dict[str, str] = {}
    for contribution in ranked:
        for name, value in contribution.fields:
            merged.setdefault(name, value)
    confidence = ranked[0].confidence
    sources = sorted({url for c in ranked for url in c.sources})
    return merged, confidence, sources


def _group(kind: CandidateKind, contributions: Iterable[_Contribution]) -> dict[Key, list[_Contribution]]:
    groups: dict[Key, list[_Contribution]] = {}
    for contribution in contributions:
        key = identity_key(kind, dict(contribution.fields))
        groups.setdefault(key, []).append(contribution)
    return groups


def _build(kind: CandidateKind, groups: dict[Key, list[_Contribution]]) -> dict[Key, object]:
    record_type = _RECORD_TYPES[kind]
    records = {}
    for key, contributions in groups.items():
        fields, confidence, sources = _merge(contributions)
        records[key] = record_type(**fields, confidence=confidence, sources=sources)
    return records


def _absorb(
    kind: CandidateKind,
    existing: dict[Key, object],
    derived: list[_Contribution],
) -> dict[Key, object]:
    """
    Add records implied by other records.

    A derived contribution whose key is already present only adds its sources
    to the existing record; unknown keys become new records.
    """
    fresh: list[_Contribution] = []
    for contribution in derived:
        key = identity_key(kind, dict(contribution.fields))
        record = existing.get(key)
        if record is None:
            fresh.append(contribution)
            continue
        record.sources = sorted(set(record.sources) | set(contribution.sources))
    result = dict(existing)
    result.update(_build(kind, _group(kind, fresh)))
    return result


def _venue_from_show(show: ShowRecord) -> _Contribution:
    fields = {
        "name": show.venue,
        "address": show.address,
        "city": show.city,
        "state": show.state,
        "zip": show.zip,
        "phone": show.venue_phone,
        "website": show.venue_website,
    }
    return _Contribution.of(fields, show.confidence, show.sources)


def _from_candidate(candidate: ExtractionCandidate) -> Optional[_Contribution]:
    """Keep only fields the record accepts; None when the identity field is blank."""
    allowed = _RECORD_FIELDS[candidate.kind]
    fields = {k: v.strip() for k, v in candidate.fields.items() if k in allowed and v and v.strip()}
    if not fields.get(IDENTITY_FIELDS[candidate.kind][0]):
        return None
    return _Contribution.of(fields, candidate.confidence, [candidate.source_image.url])


def _sorted(records: dict[Key, object]) -> list:
    return [records[key] for key in sorted(records)]


def aggregate(candidates: Iterable[ExtractionCandidate]) -> AggregatedDataset:
    """Deduplicate and merge *candidates* into an ``AggregatedDataset``."""
    by_kind: dict[CandidateKind, list[_Contribution]] = {kind: [] for kind in CandidateKind}
    for candidate in candidates:
        contribution = _from_candidate(candidate)
        if contribution is not None:
            by_kind[candidate.kind].append(contribution)

    shows = _build(CandidateKind.SHOW, _group(CandidateKind.SHOW, by_kind[CandidateKind.SHOW]))
    venues = _build(CandidateKind.VENUE, _group(CandidateKind.VENUE, by_kind[CandidateKind.VENUE]))
    djs = _build(CandidateKind.DJ, _group(CandidateKind.DJ, by_kind[CandidateKind.DJ]))
    vendors = _build(CandidateKind.VENDOR, _group(CandidateKind.VENDOR, by_kind[CandidateKind.VENDOR]))

    show_list = _sorted(shows)
    venues = _absorb(CandidateKind.VENUE, venues, [_venue_from_show(s) for s in show_list])
    djs = _absorb(
        CandidateKind.DJ,
        djs,
        [
            _Contribution.of({"name": s.dj, "vendor": s.vendor}, s.confidence, s.sources)
            for s in show_list
            if s.dj
        ],
    )
    vendor_refs = [
        _Contribution.of({"name": s.vendor}, s.confidence, s.sources) for s in show_list if s.vendor
    ] + [
        _Contribution.of({"name": d.vendor}, d.confidence, d.sources)
        for d in _sorted(djs)
        if d.vendor
    ]
    vendors = _absorb(CandidateKind.VENDOR, vendors, vendor_refs)

    return AggregatedDataset(
        vendors=_sorted(vendors),
        djs=_sorted(djs),
        venues=_sorted(venues),
        shows=show_list,
    )
