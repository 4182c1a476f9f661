"""
Record validation tests.

Guards against:
1. One bad record failing the whole batch
2. Numeric strings ("100.00") being rejected as numbers
3. Outlier warnings turning into hard errors
4. Bad schemas surfacing only at run time
"""
import pytest

from commerce_sync.errors import ConfigurationError
from commerce_sync.models.records import Platform, RawRecord
from commerce_sync.services.validation_service import ValidationSchema, ValidationService

ORDER_SCHEMA = {
    "type": "order",
    "requiredFields": ["id", "total", "currency"],
    "validations": {
        "total": {"type": "number", "min": 0},
        "currency": {"type": "string", "enum": ["USD", "EUR", "GBP"]},
    },
}


@pytest.fixture
def validator():
    return ValidationService()


class TestRequiredAndRules:

    def test_valid_and_invalid_records_judged_separately(self, validator):
        result = validator.validate(
            [
                {"id": "1", "total": "100.00", "currency": "USD"},
                {"id": "2", "total": "50.00", "currency": "XYZ"},
            ],
            ORDER_SCHEMA,
        )

        assert not result.valid
        assert result.errors == ["Record 2: invalid currency 'XYZ'"]
        assert result.invalid_record_ids == ["2"]
        assert result.invalid_indexes == [1]
        assert result.records_validated == 2

    def test_missing_required_field(self, validator):
        result = validator.validate([{"id": 7, "total": 5}], ORDER_SCHEMA)

        assert result.errors == ["Record 7: missing required field 'currency'"]

    def test_min_and_max(self, validator):
        schema = {"validations": {"quantity": {"type": "integer", "min": 1, "max": 10}}}
        result = validator.validate([{"id": 1, "quantity": 0}, {"id": 2, "quantity": 11}, {"id": 3, "quantity": 4}], schema)

        assert result.errors == [
            "Record 1: quantity must be >= 1",
            "Record 2: quantity must be <= 10",
        ]

    def test_integer_rejects_fractions(self, validator):
        schema = {"validations": {"quantity": {"type": "integer"}}}
        result = validator.validate([{"id": 1, "quantity": "2.5"}, {"id": 2, "quantity": "3"}], schema)

        assert result.invalid_record_ids == ["1"]

    def test_pattern(self, validator):
        schema = {"validations": {"email": {"type": "string", "pattern": r"^[^@]+@[^@]+$"}}}
        result = validator.validate([{"id": 1, "email": "a@b.com"}, {"id": 2, "email": "nope"}], schema)

        assert result.invalid_record_ids == ["2"]

    def test_record_without_id_gets_positional_label(self, validator):
        result = validator.validate([{"total": 1, "currency": "USD"}], ORDER_SCHEMA)

        assert result.errors == ["Record #0: missing required field 'id'"]

    def test_non_object_record(self, validator):
        result = validator.validate(["not a record"], {"requiredFields": ["id"]})

        assert result.errors == ["Record #0: expected an object, got str"]

    def test_accepts_raw_records(self, validator):
        raw = RawRecord(data={"id": 1, "total": "1.00", "currency": "EUR"}, platform=Platform.SHOPIFY, record_type="orders")

        assert validator.validate([raw], ORDER_SCHEMA).valid

    def test_duplicate_ids_judged_by_position(self, validator):
        result = validator.validate(
            [{"id": 1, "total": "1", "currency": "USD"}, {"id": 1, "total": "-1", "currency": "USD"}],
            ORDER_SCHEMA,
        )

        assert result.invalid_indexes == [1]
        assert result.errors_by_index == {1: ["Record 1: total must be >= 0"]}

    def test_deterministic(self, validator):
        records = [{"id": n, "total": str(n - 3), "currency": "USD"} for n in range(10)]

        first = validator.validate(records, ORDER_SCHEMA).to_dict()
        second = validator.validate(records, ORDER_SCHEMA).to_dict()

        assert first == second


class TestOutliers:

    def test_outlier_is_a_warning_not_an_error(self, validator):
        records = [{"id": n, "total": "20.00", "currency": "USD"} for n in range(19)]
        records.append({"id": 99, "total": "10000.00", "currency": "USD"})

        result = validator.validate(records, ORDER_SCHEMA)

        assert result.valid
        assert result.warnings == ["Record 99: unusual total amount"]

    def test_outlier_needs_eleven_samples(self, validator):
        records = [{"id": n, "total": "20.00", "currency": "USD"} for n in range(9)]
        records.append({"id": 99, "total": "10000.00", "currency": "USD"})

        assert validator.validate(records, ORDER_SCHEMA).warnings == []

        records.insert(0, {"id": 50, "total": "20.00", "currency": "USD"})

        assert validator.validate(records, ORDER_SCHEMA).warnings == ["Record 99: unusual total amount"]

    def test_small_samples_never_warn(self, validator):
        records = [{"id": 1, "total": "1", "currency": "USD"}, {"id": 2, "total": "9999", "currency": "USD"}]

        assert validator.validate(records, ORDER_SCHEMA).warnings == []


# ---------------------------------------------------------------------------
# Schema errors
# ---------------------------------------------------------------------------

def test_unknown_field_type_is_configuration_error():
    with pytest.raises(ConfigurationError):
        ValidationSchema.from_dict({"validations": {"total": {"type": "money"}}})


def test_bad_pattern_is_configuration_error():
    with pytest.raises(ConfigurationError):
        ValidationSchema.from_dict({"validations": {"sku": {"pattern": "("}}})
