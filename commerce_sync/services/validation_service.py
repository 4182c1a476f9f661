"""
Data Validation Service

Validates raw platform records against a declarative schema before they are
transformed. Validation never raises for a whole batch: every record gets its
own verdict so the engine can skip only the offending ones.
"""
import math
import re
import statistics
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Union

from commerce_sync.errors import ConfigurationError
from commerce_sync.models.records import RawRecord
from commerce_sync.utils.helpers import parse_datetime
from commerce_sync.utils.logger import log

FIELD_TYPES = ("string", "number", "integer", "boolean", "datetime", "object", "array")

# Soft outlier rule applied to numeric fields when the schema sets no threshold
DEFAULT_OUTLIER_ZSCORE = 3.0
# With fewer values no population z-score can exceed 3 (its maximum is sqrt(n - 1))
MIN_OUTLIER_SAMPLE = 11


@dataclass
class FieldRule:
    """Constraints for one field"""
    type: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    enum: Optional[List[Any]] = None
    pattern: Optional[str] = None
    outlier_zscore: Optional[float] = None

    def __post_init__(self):
        if self.type is not None and self.type not in FIELD_TYPES:
            raise ConfigurationError(
                f"Unknown field type '{self.type}'. Valid options: {', '.join(FIELD_TYPES)}"
            )
        if self.pattern is not None:
            try:
                self._regex = re.compile(self.pattern)
            except re.error as e:
                raise ConfigurationError(f"Invalid pattern {self.pattern!r}: {e}")
        else:
            self._regex = None

    @property
    def is_numeric(self) -> bool:
        return self.type in ("number", "integer")

    @property
    def zscore_threshold(self) -> Optional[float]:
        if self.outlier_zscore is not None:
            return self.outlier_zscore
        return DEFAULT_OUTLIER_ZSCORE if self.is_numeric else None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldRule":
        return cls(
            type=data.get("type"),
            min=data.get("min"),
            max=data.get("max"),
            enum=list(data["enum"]) if data.get("enum") is not None else None,
            pattern=data.get("pattern"),
            outlier_zscore=data.get("outlier_zscore", data.get("outlierZscore")),
        )


@dataclass
class ValidationSchema:
    """
    Declarative record schema

    Example:
        {
            "type": "order",
            "requiredFields": ["id", "total", "currency"],
            "validations": {
                "total": {"type": "number", "min": 0},
                "currency": {"type": "string", "enum": ["USD", "EUR", "GBP"]}
            }
        }
    """
    type: Optional[str] = None
    required_fields: List[str] = field(default_factory=list)
    validations: Dict[str, FieldRule] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ValidationSchema":
        if isinstance(data, ValidationSchema):
            return data
        data = data or {}
        validations = data.get("validations") or {}
        return cls(
            type=data.get("type"),
            required_fields=list(data.get("requiredFields", data.get("required_fields")) or []),
            validations={
                name: rule if isinstance(rule, FieldRule) else FieldRule.from_dict(rule)
                for name, rule in validations.items()
            },
        )


@dataclass
class ValidationResult:
    """Result of validating a batch of records"""
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    records_validated: int = 0
    invalid_record_ids: List[str] = field(default_factory=list)
    # Positions in the input, so duplicates of one id are judged separately
    invalid_indexes: List[int] = field(default_factory=list)
    errors_by_index: Dict[int, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "recordsValidated": self.records_validated,
            "invalidRecordIds": list(self.invalid_record_ids),
        }


def _to_number(value: Any) -> Optional[float]:
    """Numbers and numeric strings ("100.00") as float; anything else None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except (InvalidOperation, ValueError):
            return None
        return float(number) if number.is_finite() else None
    return None


def _matches_type(value: Any, field_type: str) -> bool:
    if field_type == "string":
        return isinstance(value, str)
    if field_type == "number":
        return _to_number(value) is not None
    if field_type == "integer":
        number = _to_number(value)
        return number is not None and float(number).is_integer()
    if field_type == "boolean":
        return isinstance(value, bool)
    if field_type == "datetime":
        return isinstance(value, datetime) or (isinstance(value, str) and parse_datetime(value) is not None)
    if field_type == "object":
        return isinstance(value, dict)
    if field_type == "array":
        return isinstance(value, (list, tuple))
    return True


class ValidationService:
    """
    Validates raw records against a ValidationSchema.

    Deterministic: the same input always yields the same errors and
    warnings in the same order.
    """

    def validate(
        self,
        records: Sequence[Union[RawRecord, Dict[str, Any]]],
        schema: Union[ValidationSchema, Dict[str, Any], None]
    ) -> ValidationResult:
        """
        Validate a batch of records

        Args:
            records: RawRecords or plain platform dicts
            schema: ValidationSchema or its dict form

        Returns:
            ValidationResult with per-record errors and soft-rule warnings
        """
        schema = ValidationSchema.from_dict(schema)
        result = ValidationResult(records_validated=len(records))

        payloads = [r.data if isinstance(r, RawRecord) else r for r in records]
        labels = [self._label(payload, index) for index, payload in enumerate(payloads)]

        for index, payload in enumerate(payloads):
            record_errors = self._check_record(payload, labels[index], schema)
            if record_errors:
                result.errors.extend(record_errors)
                result.invalid_indexes.append(index)
                result.errors_by_index[index] = record_errors
                if labels[index] not in result.invalid_record_ids:
                    result.invalid_record_ids.append(labels[index])

        result.warnings.extend(self._outlier_warnings(payloads, labels, schema, set(result.invalid_indexes)))
        result.valid = not result.errors

        if result.errors:
            log.debug(
                f"Validation of {len(records)} {schema.type or 'records'}: "
                f"{len(result.invalid_indexes)} invalid, {len(result.warnings)} warnings"
            )

        return result

    @staticmethod
    def _label(payload: Dict[str, Any], index: int) -> str:
        record_id = payload.get("id") if isinstance(payload, dict) else None
        return str(record_id) if record_id is not None else f"#{index}"

    def _check_record(self, payload: Any, label: str, schema: ValidationSchema) -> List[str]:
        if not isinstance(payload, dict):
            return [f"Record {label}: expected an object, got {type(payload).__name__}"]

        errors = []
        for name in schema.required_fields:
            if payload.get(name) is None:
                errors.append(f"Record {label}: missing required field '{name}'")

        for name, rule in schema.validations.items():
            value = payload.get(name)
            if value is None:
                continue  # Presence is the required-field check's job
            errors.extend(self._check_field(label, name, value, rule))

        return errors

    def _check_field(self, label: str, name: str, value: Any, rule: FieldRule) -> List[str]:
        if rule.type and not _matches_type(value, rule.type):
            return [f"Record {label}: invalid {name} '{value}'"]

        if rule.enum is not None and value not in rule.enum:
            return [f"Record {label}: invalid {name} '{value}'"]

        if rule._regex is not None and not (isinstance(value, str) and rule._regex.search(value)):
            return [f"Record {label}: invalid {name} '{value}'"]

        errors = []
        if rule.min is not None or rule.max is not None:
            number = _to_number(value)
            if number is None:
                return [f"Record {label}: invalid {name} '{value}'"]
            if rule.min is not None and number < rule.min:
                errors.append(f"Record {label}: {name} must be >= {rule.min}")
            if rule.max is not None and number > rule.max:
                errors.append(f"Record {label}: {name} must be <= {rule.max}")
        return errors

    def _outlier_warnings(
        self,
        payloads: List[Any],
        labels: List[str],
        schema: ValidationSchema,
        invalid: set
    ) -> List[str]:
        """
        Flag statistically unusual numeric values (soft rule)

        Uses the population z-score within the batch; needs at least
        MIN_OUTLIER_SAMPLE values to say anything.
        """
        warnings = []
        for name, rule in schema.validations.items():
            threshold = rule.zscore_threshold
            if threshold is None:
                continue

            samples = []
            for index, payload in enumerate(payloads):
                if index in invalid or not isinstance(payload, dict):
                    continue
                number = _to_number(payload.get(name))
                if number is not None:
                    samples.append((index, number))

            if len(samples) < MIN_OUTLIER_SAMPLE:
                continue

            values = [number for _, number in samples]
            mean = statistics.fmean(values)
            stdev = statistics.pstdev(values)
            if stdev == 0:
                continue

            for index, number in samples:
                if abs(number - mean) / stdev > threshold:
                    warnings.append(f"Record {labels[index]}: unusual {name} amount")

        return warnings
