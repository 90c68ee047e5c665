"""Batch detection of near-duplicate offenders, cases and notices.

The detector only reports groups. Deleting or merging records is left to
an operator.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz

from .config import ScrapingConfig
from .database import EnforcementDatabase
from .logging_config import get_logger
from .models import RECORD_CASE, RECORD_NOTICE, DuplicateGroup, Offender

logger = get_logger("duplicate_detector")

RESOURCE_OFFENDERS = "offenders"
RESOURCE_CASES = "cases"
RESOURCE_NOTICES = "notices"
RESOURCE_TYPES = (RESOURCE_OFFENDERS, RESOURCE_CASES, RESOURCE_NOTICES)

_RECORD_KINDS = {RESOURCE_CASES: RECORD_CASE, RESOURCE_NOTICES: RECORD_NOTICE}


class _DisjointSet:
    """Union-find over record ids, remembering why ids were joined."""

    def __init__(self) -> None:
        self._parent: Dict[int, int] = {}
        self._reasons: Dict[Tuple[int, int], str] = {}

    def find(self, item: int) -> int:
        parent = self._parent.setdefault(item, item)
        if parent != item:
            parent = self._parent[item] = self.find(parent)
        return parent

    def union(self, left: int, right: int, reason: str) -> None:
        root_left, root_right = self.find(left), self.find(right)
        if root_left != root_right:
            self._parent[max(root_left, root_right)] = min(root_left, root_right)
        self._reasons.setdefault((min(left, right), max(left, right)), reason)

    def groups(self) -> List[Tuple[List[int], List[str]]]:
        members: Dict[int, List[int]] = defaultdict(list)
        for item in list(self._parent):
            members[self.find(item)].append(item)

        result = []
        for root in sorted(members):
            ids = sorted(members[root])
            if len(ids) < 2:
                continue
            id_set = set(ids)
            reasons = sorted(
                {reason for (left, right), reason in self._reasons.items() if left in id_set and right in id_set}
            )
            result.append((ids, reasons))
        return result


def _parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def description_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Similarity in [0, 1] of two free-text descriptions; 0 when either is empty."""
    if not left or not right:
        return 0.0
    return fuzz.token_set_ratio(left.lower(), right.lower()) / 100.0


class DuplicateDetector:
    """Group stored records that look like the same real-world entity.

    Args:
        db: Store to scan
        config: Supplies ``date_window_days`` and ``description_threshold``
    """

    def __init__(self, db: EnforcementDatabase, config: Optional[ScrapingConfig] = None) -> None:
        self.db = db
        self.config = config or ScrapingConfig()

    def find_duplicates(self, resource_type: str) -> List[DuplicateGroup]:
        if resource_type == RESOURCE_OFFENDERS:
            groups = self.find_duplicate_offenders()
        elif resource_type in _RECORD_KINDS:
            groups = self.find_duplicate_records(_RECORD_KINDS[resource_type])
        else:
            raise ValueError(f"Unknown resource type: {resource_type}")
        logger.info("Found %s duplicate %s groups", len(groups), resource_type)
        return groups

    # ------------------------------------------------------------------
    # Offenders
    # ------------------------------------------------------------------
    def find_duplicate_offenders(self, offenders: Optional[Sequence[Offender]] = None) -> List[DuplicateGroup]:
        offenders = list(offenders if offenders is not None else self.db.list_offenders())
        sets = _DisjointSet()

        for key, reason in (
            (lambda o: o.registration_number, "registration_number"),
            (lambda o: o.normalized_name, "normalized_name"),
        ):
            buckets: Dict[str, List[int]] = defaultdict(list)
            for offender in offenders:
                value = key(offender)
                if value:
                    buckets[value].append(offender.id)
            for ids in buckets.values():
                self._join_all(sets, ids, reason)

        return [DuplicateGroup(RESOURCE_OFFENDERS, ids, reasons) for ids, reasons in sets.groups()]

    # ------------------------------------------------------------------
    # Cases and notices
    # ------------------------------------------------------------------
    def find_duplicate_records(
        self,
        record_kind: str,
        records: Optional[Iterable[Dict[str, Any]]] = None,
    ) -> List[DuplicateGroup]:
        """Group records of one kind sharing agency and offender with close dates and similar text."""
        rows = list(records if records is not None else self.db.list_records(record_kind))
        resource_type = RESOURCE_CASES if record_kind == RECORD_CASE else RESOURCE_NOTICES
        sets = _DisjointSet()

        by_offender: Dict[Tuple[str, int], List[Dict[str, Any]]] = defaultdict(list)
        for row in rows:
            if row.get("offender_id") is not None:
                by_offender[(row["agency_code"], row["offender_id"])].append(row)

        window = self.config.date_window_days
        threshold = self.config.description_threshold
        for bucket in by_offender.values():
            bucket.sort(key=lambda row: (row.get("action_date") or "", row["id"]))
            for index, row in enumerate(bucket):
                row_date = _parse_iso_date(row.get("action_date"))
                for other in bucket[index + 1 :]:
                    other_date = _parse_iso_date(other.get("action_date"))
                    if row_date is None or other_date is None or abs((other_date - row_date).days) > window:
                        continue
                    score = description_similarity(row.get("description"), other.get("description"))
                    if score >= threshold:
                        sets.union(row["id"], other["id"], "similar_description")

            if record_kind == RECORD_CASE:
                penalties: Dict[Tuple[str, str], List[int]] = defaultdict(list)
                for row in bucket:
                    fine, costs = str(row.get("fine") or "0"), str(row.get("costs") or "0")
                    if fine != "0" or costs != "0":
                        penalties[(fine, costs)].append(row["id"])
                for ids in penalties.values():
                    self._join_all(sets, ids, "identical_penalty")

        return [DuplicateGroup(resource_type, ids, reasons) for ids, reasons in sets.groups()]

    @staticmethod
    def _join_all(sets: _DisjointSet, ids: Sequence[int], reason: str) -> None:
        for other in ids[1:]:
            sets.union(ids[0], other, reason)
