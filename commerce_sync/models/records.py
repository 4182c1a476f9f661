"""
Record models flowing through the sync pipeline

RawRecord is transient platform data; CanonicalRecord is what the canonical
store owns. Conflict and Snapshot live only as long as the run needs them.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from commerce_sync.errors import ConfigurationError
from commerce_sync.utils.helpers import hash_data, parse_datetime, utcnow


class Platform(str, Enum):
    SHOPIFY = "shopify"
    WOOCOMMERCE = "woocommerce"
    STRIPE = "stripe"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Any) -> "Platform":
        if isinstance(value, Platform):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Unsupported platform: {value}")


class ConflictType(str, Enum):
    DUPLICATE = "duplicate"
    FIELD_MISMATCH = "field_mismatch"
    MISSING_DEPENDENCY = "missing_dependency"


@dataclass
class RawRecord:
    """Platform-native record plus fetch metadata"""
    data: Dict[str, Any]
    platform: Platform
    record_type: str
    fetched_at: datetime = field(default_factory=utcnow)
    source_page_cursor: Optional[str] = None
    deleted: bool = False

    @property
    def source_id(self) -> Optional[str]:
        value = self.data.get("id")
        return None if value is None else str(value)


@dataclass
class CanonicalRecord:
    """
    Normalized commerce entity (order, product, customer, ...)

    `fields` holds the mapped and derived values; `raw_data` keeps the source
    fields that were not mapped, for audit only. Neither raw_data nor the
    envelope take part in the content hash.
    """
    id: str
    store_id: str
    type: str
    fields: Dict[str, Any]
    version: int = 1
    updated_at: datetime = field(default_factory=utcnow)
    platform: Optional[Platform] = None
    source_id: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def content_hash(self) -> str:
        return hash_data(self.fields)

    def clone(self) -> "CanonicalRecord":
        """Deep copy so snapshots and stores never share mutable field maps"""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "storeId": self.store_id,
            "type": self.type,
            "fields": copy.deepcopy(self.fields),
            "version": self.version,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "platform": self.platform.value if self.platform else None,
            "sourceId": self.source_id,
            "rawData": copy.deepcopy(self.raw_data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalRecord":
        platform = data.get("platform")
        return cls(
            id=data["id"],
            store_id=data.get("storeId", ""),
            type=data.get("type", ""),
            fields=copy.deepcopy(data.get("fields") or {}),
            version=int(data.get("version") or 1),
            updated_at=parse_datetime(data.get("updatedAt")) or utcnow(),
            platform=Platform.parse(platform) if platform else None,
            source_id=data.get("sourceId"),
            raw_data=copy.deepcopy(data.get("rawData") or {}),
        )


@dataclass
class Conflict:
    """
    Inconsistency between an incoming record and the record sharing its id

    For field mismatches `fields` lists the differing field names; for missing
    dependencies `missing` lists the canonical ids that do not exist yet.
    """
    record_id: str
    type: ConflictType
    source_data: Dict[str, Any]
    target_data: Dict[str, Any]
    source_updated_at: Optional[datetime] = None
    target_updated_at: Optional[datetime] = None
    source_version: Optional[int] = None
    target_version: Optional[int] = None
    fields: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conflict":
        """
        Build a conflict from an operator payload.

        Accepts the {recordId, type, sourceData, targetData} shape and the
        single-field {field, sourceValue, targetValue} shorthand.
        """
        try:
            conflict_type = ConflictType(data.get("type"))
        except ValueError:
            raise ConfigurationError(f"Unknown conflict type: {data.get('type')}")

        source_data = dict(data.get("sourceData") or {})
        target_data = dict(data.get("targetData") or {})
        fields = list(data.get("fields") or [])

        single_field = data.get("field")
        if single_field:
            if "sourceValue" in data:
                source_data[single_field] = data["sourceValue"]
            if "targetValue" in data:
                target_data[single_field] = data["targetValue"]
            if single_field not in fields:
                fields.append(single_field)

        if conflict_type == ConflictType.FIELD_MISMATCH and not fields:
            fields = sorted(
                key for key in set(source_data) | set(target_data)
                if source_data.get(key) != target_data.get(key)
            )

        return cls(
            record_id=str(data.get("recordId")),
            type=conflict_type,
            source_data=source_data,
            target_data=target_data,
            source_updated_at=parse_datetime(data.get("sourceUpdatedAt")),
            target_updated_at=parse_datetime(data.get("targetUpdatedAt")),
            source_version=data.get("sourceVersion"),
            target_version=data.get("targetVersion"),
            fields=fields,
            missing=list(data.get("missing") or []),
        )


@dataclass
class Snapshot:
    """Pre-mutation copy of every canonical record a run touches"""
    id: str
    run_id: str
    captured_at: datetime
    records: List[CanonicalRecord] = field(default_factory=list)
    # Ids the run created; restore deletes these instead of reverting them
    created_ids: List[str] = field(default_factory=list)
    # Ids checked at capture time that did not exist yet
    absent_ids: List[str] = field(default_factory=list)

    @property
    def covered_ids(self) -> List[str]:
        return [record.id for record in self.records] + list(self.absent_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "runId": self.run_id,
            "capturedAt": self.captured_at.isoformat(),
            "records": [record.to_dict() for record in self.records],
            "createdIds": list(self.created_ids),
            "absentIds": list(self.absent_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            id=data["id"],
            run_id=data["runId"],
            captured_at=parse_datetime(data.get("capturedAt")) or utcnow(),
            records=[CanonicalRecord.from_dict(r) for r in data.get("records") or []],
            created_ids=list(data.get("createdIds") or []),
            absent_ids=list(data.get("absentIds") or []),
        )
