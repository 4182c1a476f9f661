"""
Raw-to-canonical transformation tests.

Guards against:
1. Calculations running before mappings, or out of declaration order
2. Arbitrary code reaching the expression evaluator
3. Canonical ids colliding across stores or record types
"""
from datetime import datetime, timezone

import pytest

from commerce_sync.errors import ConfigurationError, RecordValidationError
from commerce_sync.models.records import Platform, RawRecord
from commerce_sync.services.transform_service import (
    Calculation,
    TransformConfig,
    TransformService,
    canonical_id,
)


@pytest.fixture
def transformer():
    return TransformService()


def shopify_order(**fields):
    data = {
        "id": 1001,
        "total_price": "100.00",
        "currency": "USD",
        "customer": {"id": 5},
        "updated_at": "2024-03-01T10:00:00-05:00",
    }
    data.update(fields)
    return RawRecord(data=data, platform=Platform.SHOPIFY, record_type="orders")


ORDER_TRANSFORM = {
    "platform": "shopify",
    "record_type": "orders",
    "store_id": "store_1",
    "mappings": {"total_price": "total", "currency": "currency"},
    "calculations": {
        "total_with_tax": "round(total * 1.2, 2)",
        "total_with_fee": "total_with_tax + 5",
    },
}


class TestTransform:

    def test_mappings_then_calculations(self, transformer):
        [record] = transformer.transform([shopify_order()], ORDER_TRANSFORM)

        assert record.id == "store_1:shopify:orders:1001"
        assert record.fields == {
            "total": "100.00",
            "currency": "USD",
            "total_with_tax": 120.0,
            "total_with_fee": 125.0,
        }
        assert record.raw_data["customer"] == {"id": 5}
        assert "total_price" not in record.raw_data
        assert record.source_id == "1001"
        assert record.type == "orders"
        assert record.updated_at == datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)

    def test_pass_through_without_mappings(self, transformer):
        [record] = transformer.transform([{"id": 3, "name": "Mug"}], {"record_type": "products"})

        assert record.fields == {"id": 3, "name": "Mug"}
        assert record.id == "custom:products:3"
        assert record.platform == Platform.CUSTOM

    def test_missing_operand_rejects_record(self, transformer):
        with pytest.raises(RecordValidationError) as excinfo:
            transformer.transform([shopify_order(total_price=None)], ORDER_TRANSFORM)

        assert excinfo.value.record_id == "1001"

    def test_non_numeric_operand_rejects_record(self, transformer):
        with pytest.raises(RecordValidationError):
            transformer.transform([shopify_order(total_price="free")], ORDER_TRANSFORM)

    def test_record_without_id(self, transformer):
        with pytest.raises(RecordValidationError):
            transformer.transform([{"name": "no id"}], {})

    def test_platform_updated_at_field(self, transformer):
        raw = RawRecord(
            data={"id": "ch_1", "amount": 500, "created": 1700000000},
            platform=Platform.STRIPE,
            record_type="charges",
        )

        [record] = transformer.transform([raw], {"platform": "stripe"})

        assert record.updated_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_pure(self, transformer):
        raw = shopify_order()
        first = transformer.transform([raw], ORDER_TRANSFORM)[0]
        second = transformer.transform([raw], ORDER_TRANSFORM)[0]

        assert first.fields == second.fields
        assert first.content_hash == second.content_hash
        assert raw.data["total_price"] == "100.00"


class TestCalculationWhitelist:

    @pytest.mark.parametrize("expression", [
        "__import__('os').system('true')",
        "total.__class__",
        "[total]",
        "total if total else 0",
        "open('x')",
    ])
    def test_rejects_anything_but_arithmetic(self, expression):
        with pytest.raises(ConfigurationError):
            Calculation("out", expression)

    def test_syntax_error(self):
        with pytest.raises(ConfigurationError):
            Calculation("out", "total *")

    def test_keyword_arguments_rejected(self):
        with pytest.raises(ConfigurationError):
            Calculation("out", "round(total, ndigits=2)")

    def test_division_by_zero_rejects_record(self):
        calculation = Calculation("ratio", "a / b")

        with pytest.raises(RecordValidationError):
            calculation.evaluate({"a": 1, "b": 0}, "7")

    def test_functions_and_unary(self):
        assert Calculation("x", "max(abs(-a), b) - -1").evaluate({"a": 4, "b": "2"}) == 5


def test_canonical_id_scoping():
    assert canonical_id("s1", Platform.WOOCOMMERCE, "orders", 5) != canonical_id("s1", Platform.WOOCOMMERCE, "products", 5)
    assert canonical_id("s1", Platform.SHOPIFY, "orders", 5) != canonical_id("s2", Platform.SHOPIFY, "orders", 5)
    assert canonical_id(None, Platform.SHOPIFY, "orders", 5) == "shopify:orders:5"


def test_transform_config_rejects_bad_calculation_up_front():
    with pytest.raises(ConfigurationError):
        TransformConfig.from_dict({"calculations": {"x": "lambda: 1"}})
