"""
Similarity grouper for near-duplicate grant announcements.

The same program is usually announced by several portals (the ministry, the
regional agency, a technopark) with cosmetic title differences.  The grouper
clusters those listings into :class:`DuplicateGroup` records with one
canonical member and a merge confidence.

Algorithm
---------
1. Normalize every scanned program name into its
   ``(normalized_name, project_year)`` key and persist the key.
2. Load every live program sharing a key with the scan (plus the keys of the
   groups the scanned programs already belong to) and bucket them by key.
3. Inside a bucket, connect two programs when their organizations are
   fuzzy-similar (rapidfuzz token-set ratio) or blank *and* their regions are
   compatible.  Connected components (union-find) are the clusters.
4. Pair confidence = name * 0.6 + organization * 0.3 + agreement * 0.1, where
   agreement averages deadline proximity, category agreement, amount
   proximity and embedding cosine (when both vectors exist).  When either
   organization is blank that term drops out and the weights are
   re-normalised.  A cluster's ``merge_confidence`` is its weakest pair.
5. The canonical member is the active, most recently updated record (ties:
   earliest created, then id), unless a reviewer locked a canonical that is
   still a member.
6. Clusters are reconciled with existing groups (largest member overlap,
   then same key) so reruns update groups in place.

Rejected groups are left alone while their member fingerprint is unchanged;
a material change re-proposes them as ``pending_review``.  Groups that no
cluster claims any more are dissolved, except rejected ones.  A cluster
whose write fails is counted as an error and the run moves on.

Usage:
    from grantmatch.deduplication import SimilarityGrouper

    grouper = SimilarityGrouper(repos, config.grouping)
    report = await grouper.regroup(project_year=2025)
"""

import hashlib
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Any, Dict, List, Optional, Set, Tuple

from rapidfuzz import fuzz

from grantmatch.batch import ItemError
from grantmatch.config import GroupingConfig
from grantmatch.embedding_store import cosine_similarity
from grantmatch.models.db.duplicate_group import (
    AUTO,
    CONFIRMED,
    PENDING_REVIEW,
    REJECTED,
    DuplicateGroup,
)
from grantmatch.models.db.grant_program import PROGRAM_ACTIVE, GrantProgram
from grantmatch.normalize import (
    UNKNOWN_SIMILARITY,
    NormalizationError,
    amount_similarity,
    deadline_similarity,
    name_similarity,
    normalize_project,
)
from grantmatch.region import regions_compatible
from grantmatch.repositories.base import GroupKey, Repositories

logger = logging.getLogger(__name__)

PROGRAM_SOURCE_TYPE = "support_project"

# Fields copied from other members when the canonical lacks them.
SUPPLEMENTARY_FIELDS = (
    "summary",
    "description",
    "eligibility",
    "application_process",
    "evaluation_criteria",
    "detail_url",
)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------
@dataclass
class GroupingReport:
    """Outcome of one grouper run.

    A cluster whose write fails is recorded in ``errors`` (keyed by
    ``name|year``) and the run continues with the next cluster.
    """

    scanned: int = 0
    skipped: List[str] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    suppressed: int = 0
    collapsed: int = 0
    errors: List[ItemError] = field(default_factory=list)

    def record_error(self, item_id: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        self.errors.append(ItemError(item_id=item_id, error=message))
        logger.error(f"regroup: item {item_id} failed: {type(error).__name__}: {error}")

    def to_summary(self) -> Dict[str, Any]:
        """Shape the report for the ``batch_jobs`` status row."""
        summary = asdict(self)
        del summary["errors"]
        summary.update(
            processed=self.scanned,
            success_count=self.scanned - len(self.skipped),
            error_count=len(self.errors),
            skipped_count=len(self.skipped),
            error_details=[
                {"itemId": e.item_id, "error": e.error} for e in self.errors
            ],
        )
        return summary


@dataclass
class Cluster:
    key: GroupKey
    members: List[GrantProgram]
    confidence: float

    @property
    def member_ids(self) -> Set[uuid.UUID]:
        return {p.id for p in self.members}

    @property
    def label(self) -> str:
        name, year = self.key
        return f"{name}|{year or ''}"


class _UnionFind:
    """Disjoint-set over program ids with path compression and union by rank."""

    def __init__(self, elements: List[uuid.UUID]) -> None:
        self._parent: Dict[uuid.UUID, uuid.UUID] = {e: e for e in elements}
        self._rank: Dict[uuid.UUID, int] = {e: 0 for e in elements}

    def find(self, x: uuid.UUID) -> uuid.UUID:
        if self._parent[x] != x:
            self._parent[x] = self.find(self._parent[x])
        return self._parent[x]

    def union(self, x: uuid.UUID, y: uuid.UUID) -> None:
        rx, ry = self.find(x), self.find(y)
        if rx == ry:
            return
        if self._rank[rx] < self._rank[ry]:
            self._parent[rx] = ry
        elif self._rank[rx] > self._rank[ry]:
            self._parent[ry] = rx
        else:
            self._parent[ry] = rx
            self._rank[rx] += 1

    def groups(self) -> List[List[uuid.UUID]]:
        clusters: Dict[uuid.UUID, List[uuid.UUID]] = {}
        for element in self._parent:
            clusters.setdefault(self.find(element), []).append(element)
        return list(clusters.values())


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
def _clean_org(value: Optional[str]) -> str:
    return " ".join((value or "").split()).casefold()


def organization_similarity(first: Optional[str], second: Optional[str]) -> Optional[float]:
    """0-1 fuzzy similarity of two organization names, ``None`` if either is blank."""
    a, b = _clean_org(first), _clean_org(second)
    if not a or not b:
        return None
    return fuzz.token_set_ratio(a, b) / 100.0


def category_agreement(first: Optional[str], second: Optional[str]) -> float:
    if not first or not second:
        return UNKNOWN_SIMILARITY
    return 1.0 if first.strip() == second.strip() else 0.0


def _program_amount(program: GrantProgram) -> Optional[int]:
    return program.amount_max or program.amount_min


def canonical_sort_key(program: GrantProgram) -> Tuple:
    updated = program.updated_at.timestamp() if program.updated_at else 0.0
    created = program.created_at.timestamp() if program.created_at else 0.0
    return (
        program.deleted_at is not None,
        program.status != PROGRAM_ACTIVE,
        -updated,
        created,
        str(program.id),
    )


def choose_canonical(
    members: List[GrantProgram], locked_id: Optional[uuid.UUID] = None
) -> GrantProgram:
    if locked_id is not None:
        for program in members:
            if program.id == locked_id:
                return program
    return sorted(members, key=canonical_sort_key)[0]


def fingerprint(members: List[GrantProgram]) -> str:
    """Hash of the material fields of a member set."""
    lines = sorted(
        "|".join(
            [
                str(p.id),
                _clean_org(p.organization),
                p.deadline.isoformat() if isinstance(p.deadline, datetime) else "",
                (p.category or "").strip(),
            ]
        )
        for p in members
    )
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()


def merge_supplementary_data(
    canonical: GrantProgram, others: List[GrantProgram]
) -> Dict[str, Any]:
    """Collect fields other members can contribute to the canonical listing."""
    merged: Dict[str, Any] = {}
    known_urls = list(canonical.attachment_urls or [])
    extra_urls: List[str] = []

    for other in others:
        for name in SUPPLEMENTARY_FIELDS:
            value = getattr(other, name)
            if value and not getattr(canonical, name) and name not in merged:
                merged[name] = value
        for url in other.attachment_urls or []:
            if url not in known_urls and url not in extra_urls:
                extra_urls.append(url)

    if extra_urls:
        merged["attachment_urls"] = extra_urls
    return merged


# ---------------------------------------------------------------------------
# Grouper
# ---------------------------------------------------------------------------
class SimilarityGrouper:
    def __init__(self, repos: Repositories, config: Optional[GroupingConfig] = None) -> None:
        self._programs = repos.programs
        self._groups = repos.groups
        self._embeddings = repos.embeddings
        self.config = config or GroupingConfig()

    # -- similarity ---------------------------------------------------------

    def _linked(self, a: GrantProgram, b: GrantProgram) -> bool:
        org = organization_similarity(a.organization, b.organization)
        if org is not None and org < self.config.organization_threshold:
            return False
        return regions_compatible(a.region, b.region)

    def pair_confidence(
        self,
        a: GrantProgram,
        b: GrantProgram,
        vectors: Optional[Dict[str, List[float]]] = None,
    ) -> float:
        cfg = self.config
        name = name_similarity(a.normalized_name or "", b.normalized_name or "")
        org = organization_similarity(a.organization, b.organization)

        signals = [
            deadline_similarity(a.deadline, b.deadline),
            category_agreement(a.category, b.category),
            amount_similarity(_program_amount(a), _program_amount(b)),
        ]
        vectors = vectors or {}
        va, vb = vectors.get(str(a.id)), vectors.get(str(b.id))
        if va and vb:
            signals.append(max(0.0, cosine_similarity(va, vb)))
        agreement = sum(signals) / len(signals)

        # A blank organization carries no signal: its weight drops out.
        total = cfg.name_weight * name + cfg.agreement_weight * agreement
        weight_sum = cfg.name_weight + cfg.agreement_weight
        if org is not None:
            total += cfg.organization_weight * org
            weight_sum += cfg.organization_weight
        return round(total / weight_sum, 4) if weight_sum else 0.0

    def cluster_bucket(
        self,
        key: GroupKey,
        programs: List[GrantProgram],
        vectors: Optional[Dict[str, List[float]]] = None,
    ) -> List[Cluster]:
        """Split one key bucket into clusters of two or more programs."""
        if len(programs) < 2:
            return []

        by_id = {p.id: p for p in programs}
        uf = _UnionFind(list(by_id))
        for a, b in combinations(programs, 2):
            if self._linked(a, b):
                uf.union(a.id, b.id)

        clusters: List[Cluster] = []
        for ids in uf.groups():
            if len(ids) < 2:
                continue
            members = sorted((by_id[i] for i in ids), key=canonical_sort_key)
            confidence = min(
                self.pair_confidence(a, b, vectors) for a, b in combinations(members, 2)
            )
            if confidence < self.config.confidence_floor:
                logger.info(
                    f"Cluster under key {key} below confidence floor "
                    f"({confidence:.2f} < {self.config.confidence_floor:.2f}); not grouped"
                )
                continue
            clusters.append(Cluster(key=key, members=members, confidence=confidence))

        clusters.sort(key=lambda c: (-len(c.members), str(c.members[0].id)))
        return clusters

    def status_for(self, confidence: float) -> str:
        return AUTO if confidence >= self.config.auto_merge_threshold else PENDING_REVIEW

    # -- run ----------------------------------------------------------------

    async def _normalize(
        self, programs: List[GrantProgram], project_year: Optional[int], report: GroupingReport
    ) -> Set[GroupKey]:
        keys: Set[GroupKey] = set()
        for program in programs:
            try:
                normalized = normalize_project(program.name)
            except NormalizationError as e:
                report.skipped.append(str(program.id))
                logger.warning(f"Skipping program {program.id}: {e}")
                continue

            if project_year is not None and normalized.project_year != project_year:
                continue

            if (
                program.normalized_name != normalized.normalized_name
                or program.project_year != normalized.project_year
            ):
                await self._programs.set_normalized(
                    program.id, normalized.normalized_name, normalized.project_year
                )
            keys.add((normalized.normalized_name, normalized.project_year))
        return keys

    async def regroup(
        self,
        *,
        project_year: Optional[int] = None,
        changed_since: Optional[datetime] = None,
    ) -> GroupingReport:
        """Recompute duplicate groups for the live catalog (or a slice of it)."""
        report = GroupingReport()
        scanned = await self._programs.list_live(changed_since=changed_since)
        report.scanned = len(scanned)

        keys = await self._normalize(scanned, project_year, report)
        catalog, existing = await self._collect(keys, scanned)
        if not catalog and not existing:
            logger.info(f"Grouper found nothing to do ({report.scanned} scanned)")
            return report

        buckets: Dict[GroupKey, List[GrantProgram]] = {}
        for program in catalog:
            buckets.setdefault((program.normalized_name, program.project_year), []).append(program)

        vectors = await self._embeddings.get_vectors(
            PROGRAM_SOURCE_TYPE, [str(p.id) for p in catalog]
        )

        claimed: Set[uuid.UUID] = set()
        for key in sorted(buckets, key=lambda k: (k[0], k[1] or 0)):
            for cluster in self.cluster_bucket(key, buckets[key], vectors):
                group = self._match_group(cluster, existing, claimed)
                if group is not None:
                    claimed.add(group.id)
                try:
                    await self._apply(cluster, group, report)
                except Exception as e:
                    report.record_error(cluster.label, e)

        for group_id, group in existing.items():
            if group_id in claimed:
                continue
            if group.review_status == REJECTED:
                # Reviewer rejections are never collapsed.
                logger.info(f"Keeping rejected group {group_id}; members no longer cluster")
                continue
            try:
                await self._groups.dissolve(group_id)
            except Exception as e:
                report.record_error(str(group_id), e)
                continue
            report.collapsed += 1
            if group.review_status == CONFIRMED:
                logger.warning(
                    f"Collapsed confirmed group {group_id}; members no longer cluster"
                )
            else:
                logger.info(
                    f"Collapsed group {group_id} ({group.review_status}); "
                    "members no longer cluster"
                )

        logger.info(
            f"Grouper finished: scanned={report.scanned} skipped={len(report.skipped)} "
            f"created={report.created} updated={report.updated} unchanged={report.unchanged} "
            f"suppressed={report.suppressed} collapsed={report.collapsed} "
            f"errors={len(report.errors)}"
        )
        return report

    async def _collect(
        self, keys: Set[GroupKey], scanned: List[GrantProgram]
    ) -> Tuple[List[GrantProgram], Dict[uuid.UUID, DuplicateGroup]]:
        """Load every program and group a regroup of *keys* can touch.

        A program can still point at a group filed under another key (its
        title changed), so those groups and their keys are pulled in until
        the set stops growing.
        """
        existing: Dict[uuid.UUID, DuplicateGroup] = {}
        seen: Set[uuid.UUID] = set()
        pending = {p.group_id for p in scanned if p.group_id is not None}
        catalog: List[GrantProgram] = []

        while True:
            for group_id in pending - seen:
                seen.add(group_id)
                group = await self._groups.get(group_id)
                if group is not None:
                    existing[group.id] = group
                    keys.add((group.normalized_name, group.project_year))
            if not keys:
                return [], existing

            for group in await self._groups.list_for_keys(keys):
                existing[group.id] = group
                seen.add(group.id)
            catalog = await self._programs.list_by_keys(keys)

            pending = {
                p.group_id for p in catalog if p.group_id is not None and p.group_id not in seen
            }
            if not pending:
                return catalog, existing

    def _match_group(
        self,
        cluster: Cluster,
        existing: Dict[uuid.UUID, DuplicateGroup],
        claimed: Set[uuid.UUID],
    ) -> Optional[DuplicateGroup]:
        overlap: Dict[uuid.UUID, int] = {}
        for program in cluster.members:
            if program.group_id in existing and program.group_id not in claimed:
                overlap[program.group_id] = overlap.get(program.group_id, 0) + 1
        if overlap:
            best = max(overlap.items(), key=lambda item: (item[1], str(item[0])))
            return existing[best[0]]

        for group in existing.values():
            if (
                group.id not in claimed
                and group.review_status != REJECTED
                and (group.normalized_name, group.project_year) == cluster.key
            ):
                return group
        return None

    async def _apply(
        self, cluster: Cluster, group: Optional[DuplicateGroup], report: GroupingReport
    ) -> None:
        locked_id = group.canonical_project_id if group and group.canonical_locked else None
        canonical = choose_canonical(cluster.members, locked_id)
        others = [p for p in cluster.members if p.id != canonical.id]
        member_ids = [p.id for p in cluster.members]
        digest = fingerprint(cluster.members)
        merged = merge_supplementary_data(canonical, others)
        name, year = cluster.key

        if group is None:
            created = await self._groups.create(
                normalized_name=name,
                project_year=year,
                member_ids=member_ids,
                canonical_id=canonical.id,
                merge_confidence=cluster.confidence,
                review_status=self.status_for(cluster.confidence),
                fingerprint=digest,
                merged_data=merged,
            )
            report.created += 1
            logger.info(
                f"Created duplicate group {created.id} for {cluster.key} "
                f"({len(member_ids)} members, confidence {cluster.confidence:.2f})"
            )
            return

        if group.fingerprint == digest:
            if group.review_status == REJECTED:
                report.suppressed += 1
            else:
                report.unchanged += 1
            return

        if group.review_status == REJECTED:
            status = PENDING_REVIEW
            logger.info(f"Re-proposing rejected group {group.id}: member set changed")
        else:
            status = self.status_for(cluster.confidence)

        await self._groups.update_membership(
            group.id,
            normalized_name=name,
            project_year=year,
            member_ids=member_ids,
            canonical_id=canonical.id,
            canonical_locked=locked_id is not None,
            merge_confidence=cluster.confidence,
            review_status=status,
            fingerprint=digest,
            merged_data=merged,
        )
        report.updated += 1
