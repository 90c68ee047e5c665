"""Offender identity resolution.

Resolves the organisation named on a scraped record to a stored offender:
registration number first, then exact normalized name, then fuzzy name
similarity. Ambiguous fuzzy matches are attached to a new placeholder
offender and queued for human review; approving the review merges the
placeholder into the selected candidate, so later records for the same
name resolve to that candidate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from rapidfuzz import fuzz, process

from .config import ScrapingConfig
from .database import EnforcementDatabase
from .errors import ReviewError
from .logging_config import get_logger
from .models import (
    REVIEW_APPROVED,
    REVIEW_FLAGGED,
    REVIEW_PENDING,
    REVIEW_SKIPPED,
    MatchReview,
    Offender,
    OffenderAttrs,
)
from .registry import NullRegistry

logger = get_logger("offender_resolver")

OUTCOME_LINKED = "linked"
OUTCOME_CREATED = "created"
OUTCOME_REVIEW_PENDING = "review_pending"

Scorer = Callable[[str, str], float]


def name_similarity(left: str, right: str) -> float:
    """Token-order-insensitive similarity of two normalized names in [0, 1]."""
    return fuzz.token_sort_ratio(left, right) / 100.0


@dataclass
class Resolution:
    """Outcome of resolving one record's organisation."""

    offender: Offender
    outcome: str
    match_type: str
    score: Optional[float] = None
    review: Optional[MatchReview] = None


class OffenderResolver:
    """Find, link or create offenders for normalized organisation attributes.

    Args:
        db: Store used for offender lookups and review persistence
        registry: Object with an async ``lookup_company(query)`` method
        config: Thresholds (``auto_link_threshold``, ``review_threshold``, ``review_top_k``)
        scorer: Similarity function returning a value in [0, 1]
    """

    def __init__(
        self,
        db: EnforcementDatabase,
        *,
        registry: Optional[Any] = None,
        config: Optional[ScrapingConfig] = None,
        scorer: Optional[Scorer] = None,
    ) -> None:
        self.db = db
        self.registry = registry or NullRegistry()
        self.config = config or ScrapingConfig()
        self.scorer = scorer or name_similarity

    async def resolve(self, attrs: OffenderAttrs) -> Resolution:
        if attrs.registration_number:
            offender = self.db.find_offender_by_registration(attrs.registration_number)
            if offender:
                return self._link(offender, attrs, "registration", 1.0)

        offender = self.db.find_offender_by_normalized_name(attrs.normalized_name, attrs.postcode)
        if offender:
            return self._link(offender, attrs, "name", 1.0)

        ranked = self.rank_candidates(attrs.normalized_name)
        best_score = ranked[0][2] if ranked else 0.0

        if ranked and best_score >= self.config.auto_link_threshold:
            offender = self.db.get_offender(ranked[0][0])
            logger.info(
                "Fuzzy matched '%s' to offender %s (%s) score=%.2f",
                attrs.name,
                offender.id,
                offender.name,
                best_score,
            )
            return self._link(offender, attrs, "fuzzy", best_score)

        if ranked and best_score >= self.config.review_threshold:
            return await self._queue_review(attrs, ranked)

        offender = self.db.find_or_create_offender(attrs)
        logger.debug("Created offender %s for '%s' (best score %.2f)", offender.id, attrs.name, best_score)
        return Resolution(offender=offender, outcome=OUTCOME_CREATED, match_type="new", score=best_score or None)

    def rank_candidates(self, normalized_name: str, exclude_ids: Tuple[int, ...] = ()) -> List[Tuple[int, str, float]]:
        """Top-K stored offenders as ``(offender_id, normalized_name, score)``, best first."""
        choices = self.db.list_offender_names(exclude_ids)
        if not choices or not normalized_name:
            return []
        results = process.extract(
            normalized_name,
            choices,
            scorer=self._scaled_score,
            limit=self.config.review_top_k,
        )
        return [(offender_id, name, round(score / 100.0, 4)) for name, score, offender_id in results]

    def _scaled_score(self, query: str, choice: str, **kwargs: Any) -> float:
        return self.scorer(query, choice) * 100.0

    def _link(self, offender: Offender, attrs: OffenderAttrs, match_type: str, score: float) -> Resolution:
        filled = self.db.fill_offender_fields(offender.id, attrs)
        if filled:
            offender = self.db.get_offender(offender.id)
        return Resolution(offender=offender, outcome=OUTCOME_LINKED, match_type=match_type, score=score)

    async def _queue_review(self, attrs: OffenderAttrs, ranked: List[Tuple[int, str, float]]) -> Resolution:
        placeholder = self.db.find_or_create_offender(attrs)
        candidates: List[Dict[str, Any]] = [
            {"kind": "offender", "offender_id": offender_id, "name": name, "score": score}
            for offender_id, name, score in ranked
            if offender_id != placeholder.id and score >= self.config.review_threshold
        ]
        candidates.extend(await self._registry_candidates(attrs))
        score = ranked[0][2]
        review = self.db.create_match_review(placeholder.id, score, candidates)
        logger.info(
            "Queued match review %s for '%s' (score=%.2f, %s candidates)",
            review.id,
            attrs.name,
            score,
            len(candidates),
        )
        return Resolution(
            offender=placeholder,
            outcome=OUTCOME_REVIEW_PENDING,
            match_type="fuzzy",
            score=score,
            review=review,
        )

    async def _registry_candidates(self, attrs: OffenderAttrs) -> List[Dict[str, Any]]:
        query = attrs.registration_number or attrs.name
        try:
            companies = await self.registry.lookup_company(query)
        except Exception as exc:
            logger.warning("Registry lookup failed for '%s': %s", query, exc)
            return []

        candidates = []
        for company in companies[: self.config.review_top_k]:
            candidates.append(
                {
                    "kind": "registry",
                    "company_number": company.company_number,
                    "name": company.company_name,
                    "company_status": company.company_status,
                    "address": company.address,
                    "score": round(self.scorer(attrs.normalized_name, company.company_name.upper()), 4),
                }
            )
        return candidates

    # ------------------------------------------------------------------
    # Review actions
    # ------------------------------------------------------------------
    def approve(
        self,
        review_id: int,
        candidate: Optional[Dict[str, Any]] = None,
        *,
        candidate_index: Optional[int] = None,
        reviewed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> MatchReview:
        """Accept a candidate and merge the placeholder offender into it."""
        review = self._actionable_review(review_id)
        if candidate is None:
            if candidate_index is None:
                raise ReviewError("approve requires a candidate or candidate_index")
            try:
                candidate = review.candidate_companies[candidate_index]
            except IndexError:
                raise ReviewError(f"Review {review_id} has no candidate {candidate_index}") from None

        target_id = self._target_for_candidate(review.offender_id, candidate)
        moved = 0
        if target_id != review.offender_id:
            # Retiring the placeholder keeps later records for this name on the target.
            moved = self.db.merge_offender(review.offender_id, target_id)
        logger.info(
            "Approved review %s: offender %s -> %s (%s records moved)",
            review_id,
            review.offender_id,
            target_id,
            moved,
        )
        return self.db.update_match_review(
            review_id,
            status=REVIEW_APPROVED,
            reviewed_by=reviewed_by,
            selected_candidate=candidate,
            review_notes=notes,
        )

    def skip(self, review_id: int, *, reviewed_by: Optional[str] = None, notes: Optional[str] = None) -> MatchReview:
        """Keep the placeholder offender as a distinct organisation."""
        self._actionable_review(review_id)
        return self.db.update_match_review(
            review_id,
            status=REVIEW_SKIPPED,
            reviewed_by=reviewed_by,
            review_notes=notes,
        )

    def flag(self, review_id: int, *, reviewed_by: Optional[str] = None, notes: Optional[str] = None) -> MatchReview:
        """Mark for follow-up without changing any links."""
        review = self._actionable_review(review_id)
        if review.status == REVIEW_FLAGGED:
            return review
        return self.db.update_match_review(
            review_id,
            status=REVIEW_FLAGGED,
            reviewed_by=reviewed_by,
            review_notes=notes,
        )

    def _actionable_review(self, review_id: int) -> MatchReview:
        review = self.db.get_match_review(review_id)
        if review is None:
            raise ReviewError(f"Match review {review_id} not found")
        if review.status not in (REVIEW_PENDING, REVIEW_FLAGGED):
            raise ReviewError(f"Match review {review_id} is already {review.status}")
        return review

    def _target_for_candidate(self, placeholder_id: int, candidate: Dict[str, Any]) -> int:
        offender_id = candidate.get("offender_id")
        if offender_id is not None:
            if self.db.get_offender(int(offender_id)) is None:
                raise ReviewError(f"Candidate offender {offender_id} does not exist")
            return int(offender_id)

        company_number = candidate.get("company_number")
        if not company_number:
            raise ReviewError("Candidate has neither an offender_id nor a company_number")
        existing = self.db.find_offender_by_registration(company_number)
        if existing and existing.id != placeholder_id:
            return existing.id
        self.db.set_offender_registration(placeholder_id, company_number)
        return placeholder_id
