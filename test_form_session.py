import asyncio
from datetime import date, datetime
from decimal import Decimal

import numpy as np

from schemaform.field_schema import FieldSchema, FieldValueMeta, OperationSchema
from schemaform.form_session import FormSession, _sanitize_for_json, default_instance_id
from schemaform.lookup_client import HttpFuzzyLookupClient, HttpSavedLinkClient, SavedLink

from test_fixtures import FakeSavedLinkClient, SchemaFixtures


def session_for(operation=None, state=None, **kwargs):
    operation = operation or SchemaFixtures.order_operation()
    return FormSession(operation, state=state if state is not None else {}, config={}, **kwargs)


class TestSanitizeForJson:

    def test_dates_and_decimals(self):
        payload = {"when": datetime(2024, 5, 1, 12, 0), "day": date(2024, 5, 1), "price": Decimal("9.5")}

        assert _sanitize_for_json(payload) == {"when": "2024-05-01T12:00:00", "day": "2024-05-01", "price": 9.5}

    def test_float_noise_is_rounded(self):
        assert _sanitize_for_json([242.98000000000002]) == [242.98]

    def test_numpy_scalars_become_python_values(self):
        result = _sanitize_for_json({"qty": np.int64(3), "nested": [{"ok": np.bool_(True)}]})

        assert result == {"qty": 3, "nested": [{"ok": True}]}
        assert type(result["qty"]) is int


def test_default_instance_id():
    assert default_instance_id(OperationSchema(route="/crm/orders", method="post")) == "POST:/crm/orders"


class TestLifecycle:

    def test_open_initializes_defaults_and_is_pristine(self):
        field = FieldSchema(code="title", declared_type="string", widget_type="input", widget_config={"default": "New"})
        session = session_for(OperationSchema(route="/r", method="POST", request=[field]))

        result = asyncio.run(session.open())

        assert result.skipped is False
        assert session.get_value("title").raw == "New"
        assert session.has_unsaved_changes() is False

    def test_open_clears_previous_values(self):
        session = session_for()
        session.set_value("title", "stale")

        asyncio.run(session.open(query_params={"labels": "a,b"}))

        assert session.get_value("title").raw in ("", None)
        assert session.get_value("labels").meta[FieldValueMeta.FROM_URL] is True

    def test_edits_are_tracked_as_unsaved_changes(self):
        session = session_for()
        asyncio.run(session.open())

        session.set_value("address.street", "Main")

        assert session.has_unsaved_changes() is True
        assert "values_changed" in session.get_changes() or "type_changes" in session.get_changes()

        session.mark_pristine()
        assert session.has_unsaved_changes() is False

    def test_close_drops_values(self):
        state = {}
        session = session_for(state=state)
        asyncio.run(session.open())
        session.set_value("title", "x")

        session.close()

        assert session.store.all_paths() == []
        assert session.get_changes() == {}

    def test_saved_link_open(self):
        link = SavedLink(id=7, target_route="/crm/orders", target_method="POST",
                         request_params={"title": {"raw": "From link", "display": "From link", "meta": {}}},
                         response_metadata={"page": 1})
        session = session_for(saved_link_client=FakeSavedLinkClient({7: link}))

        result = asyncio.run(session.open(saved_link_id=7))

        assert session.get_value("title").raw == "From link"
        assert result.response_metadata == {"page": 1}


class TestIsolation:

    def test_two_sessions_on_shared_state_do_not_interfere(self):
        state = {}
        first = session_for(state=state)
        second = FormSession(SchemaFixtures.order_operation(), instance_id="second", state=state, config={})

        first.set_value("title", "one")
        second.set_value("title", "two")

        assert first.get_value("title").raw == "one"
        assert second.get_value("title").raw == "two"

        second.close()
        assert first.get_value("title").raw == "one"


class TestSubmission:

    def test_build_submission_has_schema_shape(self):
        session = session_for()
        session.set_value("title", "Order")
        session.set_value("labels", ["a", "b"])
        session.set_value("address.zip", np.int64(1000))
        session.store.load_rows("items", [{"sku": "A", "qty": 2}], SchemaFixtures.items().children)

        payload = session.build_submission()

        assert payload == {
            "title": "Order",
            "labels": ["a", "b"],
            "address": {"street": None, "zip": 1000},
            "items": [{"sku": "A", "qty": 2}],
        }

    def test_empty_store_submission(self):
        payload = session_for().build_submission()

        assert payload == {
            "title": None,
            "labels": [],
            "address": {"street": None, "zip": None},
            "items": [],
        }


class TestValidationAndVisibility:

    def test_validate_uses_live_values(self):
        session = session_for(OperationSchema(route="/plans", request=SchemaFixtures.plan_fields()))
        session.set_value("plan", "pro")

        assert list(session.validate().keys()) == ["seats"]

        session.set_value("seats", 3)
        assert session.validate() == {}

    def test_visible_fields(self):
        session = session_for(OperationSchema(route="/plans", request=SchemaFixtures.plan_fields()))
        session.set_value("plan", "basic")

        assert [f.code for f in session.visible_fields()] == ["plan"]

    def test_email_pattern_from_config(self):
        field = FieldSchema(code="email", validation="email")
        session = FormSession(OperationSchema(route="/r", request=[field]), state={},
                              config={"validation": {"email_pattern": r"^\w+@corp$"}})
        session.set_value("email", "me@corp")

        assert session.validate() == {}


class TestFromConfig:

    def test_http_clients_built_from_lookup_section(self):
        config = {"lookup": {"base_url": "http://backend.local/", "timeout": 3}}

        session = FormSession.from_config(SchemaFixtures.order_operation(), config, state={})

        assert isinstance(session.pipeline.lookup_client, HttpFuzzyLookupClient)
        assert isinstance(session.pipeline.saved_link_client, HttpSavedLinkClient)
        assert session.pipeline.lookup_client.base_url == "http://backend.local"
        assert session.pipeline.lookup_client.timeout == 3.0

    def test_no_base_url_means_no_clients(self):
        session = FormSession.from_config(SchemaFixtures.order_operation(), {}, state={})

        assert session.pipeline.lookup_client is None
        assert session.pipeline.saved_link_client is None

    def test_current_user_from_config(self):
        config = {"initialization": {"current_user": "alice"}}

        session = FormSession.from_config(SchemaFixtures.order_operation(), config, state={})

        assert session.current_user() == "alice"
