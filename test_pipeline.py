import asyncio
from datetime import datetime

from schemaform.field_schema import FieldSchema, FieldValueMeta, OperationSchema
from schemaform.form_session import FormSession
from schemaform.init_sources import (
    DefaultInitSource, InitSource, QueryParamsInitSource, SavedLinkInitSource, SOURCE_DEFAULT,
    SOURCE_QUERY_PARAMS, SOURCE_SAVED_LINK
)
from schemaform.lookup_client import FuzzyLookupClient, LookupResponse, SavedLink
from schemaform.pipeline import InitializationPipeline, merge_contributions

from test_fixtures import FakeLookupClient, FakeSavedLinkClient, SchemaFixtures, make_store, value

ROUTE = "/crm/booking"


def operation(*fields):
    return OperationSchema(route=ROUTE, method="POST", request=list(fields))


def text_field(default="D"):
    return FieldSchema(code="x", name="X", declared_type="string", widget_type="input",
                       widget_config={"default": default})


def saved_link(route=ROUTE, method="POST", **params):
    return SavedLink(
        id=1,
        target_route=route,
        target_method=method,
        request_params={code: {"raw": raw, "display": str(raw), "meta": {}} for code, raw in params.items()},
        field_metadata={"x": {"hidden": False}},
        response_metadata={"total": 3},
    )


class TestPrecedence:

    def test_saved_link_wins_over_query_and_default(self):
        store = make_store()
        client = FakeSavedLinkClient({1: saved_link(x="L")})
        pipeline = InitializationPipeline(operation(text_field()), store, saved_link_client=client)

        result = asyncio.run(pipeline.run(query_params={"x": "Q"}, saved_link_id=1))

        assert store.get("x").raw == "L"
        assert store.get("x").meta[FieldValueMeta.FROM_SAVED_LINK] is True
        assert result.origins["x"] == SOURCE_SAVED_LINK

    def test_query_wins_over_default(self):
        store = make_store()
        pipeline = InitializationPipeline(operation(text_field()), store)

        asyncio.run(pipeline.run(query_params={"x": "Q"}))

        assert store.get("x").raw == "Q"
        assert store.get("x").meta[FieldValueMeta.FROM_URL] is True

    def test_default_when_nothing_else(self):
        store = make_store()
        pipeline = InitializationPipeline(operation(text_field()), store)

        result = asyncio.run(pipeline.run())

        assert store.get("x").raw == "D"
        assert store.get("x").meta[FieldValueMeta.FROM_DEFAULT] is True
        assert result.origins["x"] == SOURCE_DEFAULT

    def test_configured_precedence_is_honoured(self):
        store = make_store()
        client = FakeSavedLinkClient({1: saved_link(x="L")})
        pipeline = InitializationPipeline(operation(text_field()), store, saved_link_client=client,
                                          precedence=[SOURCE_QUERY_PARAMS, SOURCE_SAVED_LINK, SOURCE_DEFAULT])

        asyncio.run(pipeline.run(query_params={"x": "Q"}, saved_link_id=1))

        assert store.get("x").raw == "Q"

    def test_merge_ranks_unlisted_sources_last_in_run_order(self):
        contributions = {
            "custom": {"x": value("C"), "y": value("C")},
            SOURCE_DEFAULT: {"x": value("D")},
            "other": {"y": value("O"), "z": value("O")},
        }

        merged = merge_contributions(contributions, [SOURCE_DEFAULT])

        assert merged["x"][0] == SOURCE_DEFAULT
        assert merged["y"][0] == "custom"
        assert merged["z"][0] == "other"


class TestSavedLinkSource:

    def test_mismatched_target_contributes_nothing(self):
        store = make_store()
        client = FakeSavedLinkClient({1: saved_link(route="/other", x="L")})
        pipeline = InitializationPipeline(operation(text_field()), store, saved_link_client=client)

        result = asyncio.run(pipeline.run(query_params={"x": "Q"}, saved_link_id=1))

        assert store.get("x").raw == "Q"
        assert SOURCE_SAVED_LINK in result.failed_sources

    def test_method_mismatch_contributes_nothing(self):
        store = make_store()
        client = FakeSavedLinkClient({1: saved_link(method="GET", x="L")})
        pipeline = InitializationPipeline(operation(text_field()), store, saved_link_client=client)

        asyncio.run(pipeline.run(saved_link_id=1))

        assert store.get("x").raw == "D"

    def test_missing_link_contributes_nothing(self):
        store = make_store()
        client = FakeSavedLinkClient({})
        pipeline = InitializationPipeline(operation(text_field()), store, saved_link_client=client)

        result = asyncio.run(pipeline.run(saved_link_id=404))

        assert client.fetched == [404]
        assert store.get("x").raw == "D"
        assert result.failed_sources == []

    def test_metadata_is_returned(self):
        store = make_store()
        client = FakeSavedLinkClient({1: saved_link(x="L")})
        pipeline = InitializationPipeline(operation(text_field()), store, saved_link_client=client)

        result = asyncio.run(pipeline.run(saved_link_id=1))

        assert result.field_metadata == {"x": {"hidden": False}}
        assert result.response_metadata == {"total": 3}

    def test_saved_object_is_expanded_into_member_paths(self):
        store = make_store()
        client = FakeSavedLinkClient({1: saved_link(address={"street": "Main", "zip": 10})})
        pipeline = InitializationPipeline(operation(SchemaFixtures.address()), store, saved_link_client=client)

        asyncio.run(pipeline.run(saved_link_id=1))

        assert store.get("address.street").raw == "Main"
        assert store.get("address.street").meta[FieldValueMeta.FROM_SAVED_LINK] is True
        assert store.get("address.zip").raw == 10


class TestWidgetInitialization:

    def test_multiselect_from_url_resolves_labels(self):
        store = make_store()
        client = FakeLookupClient(items=[{"value": 1, "label": "One"}, {"value": 2, "label": "Two"}])
        pipeline = InitializationPipeline(operation(SchemaFixtures.tags()), store, lookup_client=client)

        asyncio.run(pipeline.run(query_params={"tags": '["1","2"]'}))

        assert store.get("tags").raw == [1, 2]
        assert store.get("tags").display == "One, Two"

    def test_lookup_error_leaves_value_untouched(self):
        store = make_store()
        client = FakeLookupClient(error_msg="not found")
        pipeline = InitializationPipeline(operation(SchemaFixtures.room()), store, lookup_client=client)

        asyncio.run(pipeline.run(query_params={"room_id": "3"}))

        assert store.get("room_id").raw == "3"
        assert store.get("room_id").meta[FieldValueMeta.FROM_URL] is True

    def test_failing_field_does_not_affect_siblings(self):
        class PartialClient(FuzzyLookupClient):
            async def lookup(self, route, method, request):
                if request.code == "room_id":
                    raise RuntimeError("lookup backend down")
                return LookupResponse(items=[{"value": 1, "label": "One"}])

        store = make_store()
        pipeline = InitializationPipeline(operation(SchemaFixtures.room(), SchemaFixtures.tags()), store,
                                          lookup_client=PartialClient())

        asyncio.run(pipeline.run(query_params={"room_id": "3", "tags": "1"}))

        assert store.get("room_id").raw == "3"
        assert store.get("tags").raw == [1]
        assert store.get("tags").display == "One"

    def test_url_scalars_without_initializer_get_declared_type(self):
        store = make_store()
        fields = [
            FieldSchema(code="seats", declared_type="int", widget_type="number"),
            FieldSchema(code="active", declared_type="bool", widget_type="switch"),
            FieldSchema(code="due", declared_type="timestamp", widget_type="timestamp"),
            FieldSchema(code="note", declared_type="string", widget_type="input"),
        ]
        pipeline = InitializationPipeline(operation(*fields), store)

        asyncio.run(pipeline.run(query_params={"seats": "5", "active": "true", "due": "1700000000000",
                                               "note": "12"}))

        assert store.get("seats").raw == 5
        assert store.get("active").raw is True
        assert store.get("due").raw == 1700000000000
        assert store.get("note").raw == "12"
        assert store.get("seats").meta[FieldValueMeta.FROM_URL] is True
        assert store.get("seats").meta[FieldValueMeta.CONVERTED] is True

    def test_url_submission_is_typed(self):
        fields = [
            FieldSchema(code="seats", declared_type="int", widget_type="number"),
            FieldSchema(code="active", declared_type="bool", widget_type="switch"),
        ]
        session = FormSession(operation(*fields), state={}, config={})

        asyncio.run(session.open(query_params={"seats": "5", "active": "true"}))

        assert session.build_submission() == {"seats": 5, "active": True}

    def test_timestamp_default_uses_reference_time(self):
        store = make_store()
        field = FieldSchema(code="due", declared_type="timestamp", widget_type="timestamp",
                            widget_config={"default": "$today"})
        pipeline = InitializationPipeline(operation(field), store)

        asyncio.run(pipeline.run(now=datetime(2024, 5, 15, 9, 0)))

        assert store.get("due").raw == int(datetime(2024, 5, 15).timestamp() * 1000)


class TestRunGuard:

    def test_concurrent_run_is_rejected(self):
        gate = asyncio.Event()

        class SlowClient(FuzzyLookupClient):
            async def lookup(self, route, method, request):
                await gate.wait()
                return LookupResponse(items=[{"value": 3, "label": "Room 3"}])

        store = make_store()
        pipeline = InitializationPipeline(operation(SchemaFixtures.room()), store, lookup_client=SlowClient())

        async def scenario():
            first = asyncio.create_task(pipeline.run(query_params={"room_id": "3"}))
            while not pipeline.is_running:
                await asyncio.sleep(0)
            second = await pipeline.run(query_params={"room_id": "9"})
            gate.set()
            return await first, second

        first, second = asyncio.run(scenario())

        assert second.skipped is True
        assert first.skipped is False
        assert store.get("room_id").display == "Room 3"
        assert pipeline.is_running is False

    def test_raising_source_is_contained(self):
        class BrokenSource(InitSource):
            name = "broken"

            async def load(self, context):
                raise ValueError("bad state")

        store = make_store()
        pipeline = InitializationPipeline(operation(text_field()), store,
                                          sources=[BrokenSource(), QueryParamsInitSource(), DefaultInitSource()])

        result = asyncio.run(pipeline.run(query_params={"x": "Q"}))

        assert result.failed_sources == ["broken"]
        assert store.get("x").raw == "Q"


def test_default_source_keeps_existing_store_values():
    store = make_store()
    store.set("x", value("edited"))
    pipeline = InitializationPipeline(operation(text_field()), store,
                                      sources=[SavedLinkInitSource(None), QueryParamsInitSource(), DefaultInitSource()])

    asyncio.run(pipeline.run())

    assert store.get("x").raw == "edited"
