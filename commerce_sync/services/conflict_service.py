"""
Conflict Resolution Service

Detects conflicts between incoming canonical records and what the canonical
store (or an earlier batch of the same run) already holds, and applies the
job's resolution policy to each one independently.

Policies are a closed set per conflict type:
    duplicates:          merge_keep_latest | keep_target | keep_source
    fieldMismatches:     prefer_source | prefer_target
    missingDependencies: skip_and_flag | ignore
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union

from commerce_sync.errors import ConfigurationError, ConflictUnresolvedError
from commerce_sync.models.records import CanonicalRecord, Conflict, ConflictType
from commerce_sync.services.transform_service import canonical_id
from commerce_sync.utils.logger import log

DUPLICATE_POLICIES = ("merge_keep_latest", "keep_target", "keep_source")
FIELD_MISMATCH_POLICIES = ("prefer_source", "prefer_target")
MISSING_DEPENDENCY_POLICIES = ("skip_and_flag", "ignore")


@dataclass(frozen=True)
class ResolutionStrategy:
    duplicates: str = "merge_keep_latest"
    field_mismatches: str = "prefer_source"
    missing_dependencies: str = "skip_and_flag"

    def __post_init__(self):
        for name, value, options in (
            ("duplicates", self.duplicates, DUPLICATE_POLICIES),
            ("fieldMismatches", self.field_mismatches, FIELD_MISMATCH_POLICIES),
            ("missingDependencies", self.missing_dependencies, MISSING_DEPENDENCY_POLICIES),
        ):
            if value not in options:
                raise ConfigurationError(
                    f"Unknown {name} policy '{value}'. Valid options: {', '.join(options)}"
                )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResolutionStrategy":
        if isinstance(data, ResolutionStrategy):
            return data
        data = data or {}
        defaults = cls()
        return cls(
            duplicates=data.get("duplicates", defaults.duplicates),
            field_mismatches=data.get("fieldMismatches", data.get("field_mismatches", defaults.field_mismatches)),
            missing_dependencies=data.get(
                "missingDependencies", data.get("missing_dependencies", defaults.missing_dependencies)
            ),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "duplicates": self.duplicates,
            "fieldMismatches": self.field_mismatches,
            "missingDependencies": self.missing_dependencies,
        }


@dataclass
class Resolution:
    """
    Decision for one conflict

    `record` holds the field values to write, or None when nothing is written.
    """
    record_id: str
    conflict_type: ConflictType
    resolution: str
    action: str
    record: Optional[Dict[str, Any]] = None
    updated_at: Optional[datetime] = None
    flagged_for_review: bool = False
    retry: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "conflictType": self.conflict_type.value,
            "resolution": self.resolution,
            "action": self.action,
            "flaggedForReview": self.flagged_for_review,
            "retry": self.retry,
        }


@dataclass
class ResolutionResult:
    conflicts_resolved: int = 0
    resolutions: List[Resolution] = field(default_factory=list)
    unresolved: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflictsResolved": self.conflicts_resolved,
            "resolutions": [r.to_dict() for r in self.resolutions],
            "unresolved": list(self.unresolved),
        }


def _newer_side(conflict: Conflict) -> str:
    """'source' or 'target', by updatedAt then version; ties go to the fresh source"""
    if conflict.source_updated_at and conflict.target_updated_at \
            and conflict.source_updated_at != conflict.target_updated_at:
        return "source" if conflict.source_updated_at > conflict.target_updated_at else "target"
    if conflict.source_version is not None and conflict.target_version is not None \
            and conflict.source_version != conflict.target_version:
        return "source" if conflict.source_version > conflict.target_version else "target"
    return "source"


class ConflictResolver:
    """Detects and resolves record conflicts"""

    # ==================== DETECTION ====================

    @staticmethod
    def missing_dependencies(
        record: CanonicalRecord,
        dependencies: Optional[Dict[str, str]],
        known_ids: Set[str]
    ) -> List[str]:
        """
        Canonical ids the record references that do not exist yet

        Args:
            record: Incoming canonical record
            dependencies: {field: dependency record type}, e.g. {"customer_id": "customers"}
            known_ids: Canonical ids known to exist (store, this run, this batch)
        """
        missing = []
        for field_name, dependency_type in (dependencies or {}).items():
            value = record.fields.get(field_name, record.raw_data.get(field_name))
            if value in (None, ""):
                continue
            dependency_id = canonical_id(record.store_id, record.platform, dependency_type, value)
            if dependency_id not in known_ids:
                missing.append(dependency_id)
        return missing

    def detect_one(
        self,
        incoming: CanonicalRecord,
        target: Optional[CanonicalRecord],
        written_this_run: bool = False,
        missing: Optional[List[str]] = None
    ) -> Optional[Conflict]:
        """
        Conflict for one incoming record, if any

        Args:
            incoming: Freshly transformed record
            target: Current version of the record (store or earlier in this run)
            written_this_run: target was produced by this run (duplicate) rather
                than a prior run (field mismatch)
            missing: Unresolved dependency ids
        """
        if missing:
            return Conflict(
                record_id=incoming.id,
                type=ConflictType.MISSING_DEPENDENCY,
                source_data=dict(incoming.fields),
                target_data=dict(target.fields) if target else {},
                source_updated_at=incoming.updated_at,
                missing=list(missing),
            )

        if target is None or incoming.content_hash == target.content_hash:
            return None

        fields = sorted(
            key for key in set(incoming.fields) | set(target.fields)
            if incoming.fields.get(key) != target.fields.get(key)
        )
        return Conflict(
            record_id=incoming.id,
            type=ConflictType.DUPLICATE if written_this_run else ConflictType.FIELD_MISMATCH,
            source_data=dict(incoming.fields),
            target_data=dict(target.fields),
            source_updated_at=incoming.updated_at,
            target_updated_at=target.updated_at,
            source_version=incoming.version,
            target_version=target.version,
            fields=fields,
        )

    def detect(
        self,
        incoming: Sequence[CanonicalRecord],
        existing: Dict[str, CanonicalRecord],
        written_this_run: Optional[Dict[str, CanonicalRecord]] = None,
        known_ids: Optional[Iterable[str]] = None,
        dependencies: Optional[Dict[str, str]] = None
    ) -> List[Conflict]:
        """
        Detect conflicts for a batch

        Records repeated within the batch are duplicates of their earlier
        occurrence.

        Returns:
            Conflicts in input order
        """
        current = dict(existing)
        seen = dict(written_this_run or {})
        current.update(seen)
        known = set(known_ids or ()) | set(current)

        conflicts = []
        for record in incoming:
            conflict = self.detect_one(
                record,
                current.get(record.id),
                written_this_run=record.id in seen,
                missing=self.missing_dependencies(record, dependencies, known),
            )
            if conflict:
                conflicts.append(conflict)
            current[record.id] = record
            seen[record.id] = record
            known.add(record.id)
        return conflicts

    # ==================== RESOLUTION ====================

    def resolve(
        self,
        conflicts: Sequence[Union[Conflict, Dict[str, Any]]],
        strategy: Union[ResolutionStrategy, Dict[str, Any], None]
    ) -> ResolutionResult:
        """
        Apply the strategy to every conflict

        Each conflict is resolved on its own, so the outcome for one never
        depends on the others or on their order.

        Raises:
            ConfigurationError: unknown policy strings
        """
        strategy = ResolutionStrategy.from_dict(strategy)
        result = ResolutionResult()

        for conflict in conflicts:
            if not isinstance(conflict, Conflict):
                conflict = Conflict.from_dict(conflict)
            try:
                result.resolutions.append(self.resolve_one(conflict, strategy))
                result.conflicts_resolved += 1
            except ConflictUnresolvedError as e:
                log.warning(f"Conflict on {conflict.record_id} unresolved: {e}")
                result.unresolved.append(e.to_dict())

        return result

    def resolve_one(self, conflict: Conflict, strategy: ResolutionStrategy) -> Resolution:
        """
        Raises:
            ConflictUnresolvedError: the policy could not reach a decision
        """
        if not isinstance(conflict.source_data, dict) or not isinstance(conflict.target_data, dict):
            raise ConflictUnresolvedError(
                f"Conflict data for {conflict.record_id} is not a mapping", record_id=conflict.record_id
            )

        if conflict.type == ConflictType.DUPLICATE:
            return self._resolve_duplicate(conflict, strategy.duplicates)
        if conflict.type == ConflictType.FIELD_MISMATCH:
            return self._resolve_field_mismatch(conflict, strategy.field_mismatches)
        if conflict.type == ConflictType.MISSING_DEPENDENCY:
            return self._resolve_missing_dependency(conflict, strategy.missing_dependencies)

        raise ConflictUnresolvedError(
            f"No policy for conflict type {conflict.type}", record_id=conflict.record_id
        )

    def _resolve_duplicate(self, conflict: Conflict, policy: str) -> Resolution:
        if policy == "merge_keep_latest":
            if _newer_side(conflict) == "source":
                merged = {**conflict.target_data, **conflict.source_data}
                updated_at = conflict.source_updated_at
            else:
                merged = {**conflict.source_data, **conflict.target_data}
                updated_at = conflict.target_updated_at
            return Resolution(
                record_id=conflict.record_id,
                conflict_type=conflict.type,
                resolution="merge",
                action="kept_latest_version",
                record=merged,
                updated_at=updated_at,
            )

        if policy == "keep_target":
            return Resolution(
                record_id=conflict.record_id,
                conflict_type=conflict.type,
                resolution="skip",
                action="kept_target_value",
            )

        return Resolution(
            record_id=conflict.record_id,
            conflict_type=conflict.type,
            resolution="overwrite",
            action="used_source_value",
            record=dict(conflict.source_data),
            updated_at=conflict.source_updated_at,
        )

    def _resolve_field_mismatch(self, conflict: Conflict, policy: str) -> Resolution:
        if policy == "prefer_target":
            return Resolution(
                record_id=conflict.record_id,
                conflict_type=conflict.type,
                resolution="manual",
                action="kept_target_value",
                flagged_for_review=True,
            )

        return Resolution(
            record_id=conflict.record_id,
            conflict_type=conflict.type,
            resolution="overwrite",
            action="used_source_value",
            record={**conflict.target_data, **conflict.source_data},
            updated_at=conflict.source_updated_at,
        )

    def _resolve_missing_dependency(self, conflict: Conflict, policy: str) -> Resolution:
        if policy == "ignore":
            return Resolution(
                record_id=conflict.record_id,
                conflict_type=conflict.type,
                resolution="ignore",
                action="wrote_without_dependency",
                record=dict(conflict.source_data),
                updated_at=conflict.source_updated_at,
            )

        return Resolution(
            record_id=conflict.record_id,
            conflict_type=conflict.type,
            resolution="skip",
            action="marked_for_retry",
            flagged_for_review=True,
            retry=True,
        )
