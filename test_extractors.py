import pytest

from schemaform.extractors import (
    BasicExtractor, Extractor, ExtractorRegistry, FormExtractor, MultiSelectExtractor,
    ScalarArrayExtractor, TableExtractor, collect_submission
)
from schemaform.field_schema import FieldSchema

from test_fixtures import SchemaFixtures, make_store, value


def test_empty_store_extracts_exact_schema_shape():
    store = make_store()
    registry = ExtractorRegistry(store)

    result = collect_submission(SchemaFixtures.order_fields(), registry)

    assert result == {
        "title": None,
        "labels": [],
        "address": {"street": None, "zip": None},
        "items": [],
    }


def test_set_every_leaf_then_extract_reproduces_leaves():
    store = make_store()
    registry = ExtractorRegistry(store)
    store.set("title", value("Order 1"))
    store.set("labels", value(["urgent", "vip"]))
    store.set("address.street", value("Main St"))
    store.set("address.zip", value(12345))
    store.set("items[0].sku", value("A-1"))
    store.set("items[0].qty", value(2))
    store.set("items[1].sku", value("B-2"))
    store.set("items[1].qty", value(None))

    result = collect_submission(SchemaFixtures.order_fields(), registry)

    assert result == {
        "title": "Order 1",
        "labels": ["urgent", "vip"],
        "address": {"street": "Main St", "zip": 12345},
        "items": [{"sku": "A-1", "qty": 2}, {"sku": "B-2", "qty": None}],
    }


def test_object_falls_back_to_raw_parent_value():
    store = make_store()
    registry = ExtractorRegistry(store)
    store.set("address", value({"street": "Raw St", "zip": 1}))
    store.set("address.zip", value(99))

    assert registry.extract(SchemaFixtures.address(), "address") == {"street": "Raw St", "zip": 99}


def test_member_missing_from_raw_parent_and_store_keeps_shape():
    store = make_store()
    registry = ExtractorRegistry(store)
    order = FieldSchema(code="order", declared_type="struct", widget_type="form",
                        children=[SchemaFixtures.address(), FieldSchema(code="note")])
    store.set("order", value({"note": "raw note"}))

    assert registry.extract(order, "order") == {"address": {"street": None, "zip": None}, "note": "raw note"}


def test_table_falls_back_to_raw_rows():
    store = make_store()
    registry = ExtractorRegistry(store)
    store.set("items", value([{"sku": "A", "qty": 1}, {"sku": "B", "qty": 2}]))
    store.set("items[1].qty", value(7))

    assert registry.extract(SchemaFixtures.items(), "items") == [
        {"sku": "A", "qty": 1},
        {"sku": "B", "qty": 7},
    ]


def test_nested_table_inside_object_keeps_shape():
    store = make_store()
    registry = ExtractorRegistry(store)
    order = FieldSchema(
        code="order",
        declared_type="struct",
        widget_type="form",
        children=[SchemaFixtures.items(), SchemaFixtures.address()],
    )
    store.set("order.items[0].sku", value("X"))

    assert registry.extract(order, "order") == {
        "items": [{"sku": "X", "qty": None}],
        "address": {"street": None, "zip": None},
    }


@pytest.mark.parametrize("raw, expected", [
    (None, []),
    ("", []),
    ("solo", ["solo"]),
    (3, [3]),
    (["a", "b"], ["a", "b"]),
    (("a", "b"), ["a", "b"]),
])
def test_scalar_array_coercion(raw, expected):
    store = make_store()
    registry = ExtractorRegistry(store)
    field = FieldSchema(code="labels", declared_type="[]string")
    store.set("labels", value(raw))

    assert registry.extract(field, "labels") == expected


class TestMultiSelect:

    def test_string_declared_type_submits_joined_string(self):
        store = make_store()
        registry = ExtractorRegistry(store)
        field = FieldSchema(code="colors", declared_type="string", widget_type="multiselect")
        store.set("colors", value(["red", "blue"]))

        assert registry.extract(field, "colors") == "red,blue"

    def test_string_declared_type_empty_submits_empty_string(self):
        store = make_store()
        registry = ExtractorRegistry(store)
        field = FieldSchema(code="colors", declared_type="string", widget_type="multiselect")

        assert registry.extract(field, "colors") == ""

    def test_array_type_splits_comma_string(self):
        store = make_store()
        registry = ExtractorRegistry(store)
        store.set("tags", value("1, 2"))

        assert registry.extract(SchemaFixtures.tags(), "tags") == ["1", "2"]

    def test_array_type_keeps_list(self):
        store = make_store()
        registry = ExtractorRegistry(store)
        store.set("tags", value([1, 2]))

        assert registry.extract(SchemaFixtures.tags(), "tags") == [1, 2]


class TestRegistryDispatch:

    @pytest.mark.parametrize("field, expected_type", [
        (FieldSchema(code="a", widget_type="form"), FormExtractor),
        (FieldSchema(code="a", widget_type="table"), TableExtractor),
        (FieldSchema(code="a", widget_type="multiselect", declared_type="[]int"), MultiSelectExtractor),
        (FieldSchema(code="a", declared_type="[]struct"), TableExtractor),
        (FieldSchema(code="a", declared_type="struct"), FormExtractor),
        (FieldSchema(code="a", declared_type="[]float", widget_type="input"), ScalarArrayExtractor),
        (FieldSchema(code="a", declared_type="int", widget_type="number"), BasicExtractor),
        (FieldSchema(code="a"), BasicExtractor),
    ])
    def test_fallback_chain(self, field, expected_type):
        registry = ExtractorRegistry(make_store())

        assert type(registry.get_extractor(field)) is expected_type

    def test_custom_widget_extractor_and_unregister(self):
        class UpperExtractor(Extractor):
            def extract(self, field, path, store, registry):
                raw = store.get(path).raw
                return raw.upper() if isinstance(raw, str) else raw

        store = make_store()
        registry = ExtractorRegistry(store)
        field = FieldSchema(code="code", widget_type="shout")
        store.set("code", value("abc"))

        registry.register("shout", UpperExtractor())
        assert registry.extract(field, "code") == "ABC"

        registry.unregister("shout")
        assert registry.extract(field, "code") == "abc"

    def test_registries_are_independent(self):
        first = ExtractorRegistry(make_store("a"))
        second = ExtractorRegistry(make_store("b"))
        field = FieldSchema(code="x", widget_type="form")

        first.unregister("form")

        assert type(first.get_extractor(field)) is BasicExtractor
        assert type(second.get_extractor(field)) is FormExtractor
