"""
Data Transformation Service

Maps validated raw platform records into canonical records: field renames
first, then derived-field calculations in declaration order, each seeing the
results of the ones before it.

Calculations are small arithmetic expressions ("total_price * 1.0",
"round(subtotal + tax, 2)") evaluated by a whitelisted AST walker, never by
eval().
"""
import ast
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from commerce_sync.errors import ConfigurationError, RecordValidationError
from commerce_sync.models.records import CanonicalRecord, Platform, RawRecord
from commerce_sync.utils.helpers import parse_datetime

_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
    "float": float,
    "int": int,
}

# Source field carrying the last-modified time, per platform
_UPDATED_AT_FIELDS = {
    Platform.SHOPIFY: "updated_at",
    Platform.WOOCOMMERCE: "date_modified_gmt",
    Platform.STRIPE: "created",
    Platform.CUSTOM: "updated_at",
}


def canonical_id(store_id: Optional[str], platform: Platform, record_type: str, source_id: Any) -> str:
    """
    Canonical record id

    Scoped by store, platform and record type, since platforms reuse numeric
    ids across resources (WooCommerce order 5 and product 5).
    """
    parts = [store_id] if store_id else []
    parts.extend([platform.value, record_type, str(source_id)])
    return ":".join(parts)


class Calculation:
    """One compiled calculation expression"""

    def __init__(self, target: str, expression: str):
        self.target = target
        self.expression = expression
        try:
            tree = ast.parse(str(expression), mode="eval")
        except SyntaxError as e:
            raise ConfigurationError(f"Invalid calculation for '{target}': {expression!r} ({e.msg})")
        self._check(tree.body)
        self._tree = tree.body

    def _check(self, node: ast.AST) -> None:
        """Reject anything outside the arithmetic whitelist at build time"""
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
            self._check(node.left)
            self._check(node.right)
        elif isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            self._check(node.operand)
        elif isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
                and not isinstance(node.value, bool):
            return
        elif isinstance(node, ast.Name):
            return
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                name = node.func.id if isinstance(node.func, ast.Name) else ast.dump(node.func)
                raise ConfigurationError(
                    f"Unknown function '{name}' in calculation for '{self.target}'. "
                    f"Allowed: {', '.join(_FUNCTIONS)}"
                )
            if node.keywords:
                raise ConfigurationError(f"Keyword arguments are not allowed in calculation for '{self.target}'")
            for arg in node.args:
                self._check(arg)
        else:
            raise ConfigurationError(
                f"Unsupported syntax {type(node).__name__} in calculation for '{self.target}': {self.expression!r}"
            )

    def evaluate(self, values: Dict[str, Any], record_label: str = "") -> Any:
        return self._eval(self._tree, values, record_label)

    def _eval(self, node: ast.AST, values: Dict[str, Any], label: str) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if values.get(node.id) is None:
                raise RecordValidationError(
                    f"Record {label}: calculation '{self.target}' needs missing field '{node.id}'",
                    record_id=label or None,
                )
            return self._coerce(node.id, values[node.id], label)
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self._eval(node.operand, values, label))
        if isinstance(node, ast.Call):
            args = [self._eval(arg, values, label) for arg in node.args]
            return _FUNCTIONS[node.func.id](*args)

        left = self._eval(node.left, values, label)
        right = self._eval(node.right, values, label)
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except (ArithmeticError, TypeError) as e:
            raise RecordValidationError(
                f"Record {label}: calculation '{self.target}' failed: {e}",
                record_id=label or None,
            )

    def _coerce(self, name: str, value: Any, label: str) -> Any:
        """Numeric strings become numbers when used as operands"""
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                pass
            try:
                return float(value)
            except ValueError:
                pass
        raise RecordValidationError(
            f"Record {label}: field '{name}' is not numeric ({value!r})",
            record_id=label or None,
        )


@dataclass
class TransformConfig:
    """
    How raw records of one type become canonical records

    mappings: source field -> canonical field. Empty means pass-through.
    calculations: canonical field -> expression, applied in order.
    """
    platform: Platform = Platform.CUSTOM
    mappings: Dict[str, str] = field(default_factory=dict)
    calculations: Dict[str, str] = field(default_factory=dict)
    record_type: Optional[str] = None
    store_id: str = ""
    id_field: str = "id"
    updated_at_field: Optional[str] = None

    def __post_init__(self):
        self.platform = Platform.parse(self.platform)
        self.compiled = [Calculation(target, expr) for target, expr in self.calculations.items()]

    @property
    def source_updated_at_field(self) -> str:
        return self.updated_at_field or _UPDATED_AT_FIELDS[self.platform]

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], **defaults) -> "TransformConfig":
        """
        Build from the operator payload; keyword defaults fill absent keys
        """
        if isinstance(data, TransformConfig):
            return data
        merged = dict(defaults)
        for key, value in (data or {}).items():
            if value is not None:
                merged[key] = value
        return cls(
            platform=merged.get("platform", Platform.CUSTOM),
            mappings=dict(merged.get("mappings") or {}),
            calculations=dict(merged.get("calculations") or {}),
            record_type=merged.get("record_type", merged.get("recordType", merged.get("type"))),
            store_id=merged.get("store_id", merged.get("storeId", "")) or "",
            id_field=merged.get("id_field", merged.get("idField", "id")),
            updated_at_field=merged.get("updated_at_field", merged.get("updatedAtField")),
        )


class TransformService:
    """Pure raw-to-canonical mapping"""

    def transform(
        self,
        records: Sequence[Union[RawRecord, Dict[str, Any]]],
        config: Union[TransformConfig, Dict[str, Any]]
    ) -> List[CanonicalRecord]:
        """
        Transform records into canonical form

        Args:
            records: RawRecords or plain platform dicts
            config: TransformConfig or its dict form

        Returns:
            Canonical records in input order

        Raises:
            RecordValidationError: a record the validator should have rejected
        """
        config = TransformConfig.from_dict(config)
        return [self.transform_record(record, config) for record in records]

    def transform_record(self, record: Union[RawRecord, Dict[str, Any]], config: TransformConfig) -> CanonicalRecord:
        if not isinstance(record, RawRecord):
            record = RawRecord(
                data=dict(record),
                platform=config.platform,
                record_type=config.record_type or "records",
            )

        data = record.data
        source_id = data.get(config.id_field)
        if source_id is None:
            raise RecordValidationError(f"Record without '{config.id_field}' cannot be transformed")
        label = str(source_id)

        if config.mappings:
            fields = {target: data[source] for source, target in config.mappings.items() if source in data}
            raw_data = {key: value for key, value in data.items() if key not in config.mappings}
        else:
            fields = dict(data)
            raw_data = {}

        for calculation in config.compiled:
            fields[calculation.target] = calculation.evaluate(fields, label)

        record_type = config.record_type or record.record_type
        return CanonicalRecord(
            id=canonical_id(config.store_id, record.platform, record_type, source_id),
            store_id=config.store_id,
            type=record_type,
            fields=fields,
            version=1,
            updated_at=parse_datetime(data.get(config.source_updated_at_field)) or record.fetched_at,
            platform=record.platform,
            source_id=label,
            raw_data=raw_data,
        )
