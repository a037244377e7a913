"""Tests for the record transformer."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from reverse_etl.handlers import link_index_key
from reverse_etl.models import LookupIndex, Record
from reverse_etl.services.transformation_service import (
    BUILTIN_FILTERS,
    RecordTransformer,
    assign_path,
    coerce_value,
)
from reverse_etl.models import parse_destination_path

from conftest import make_sync


def _rule(mapping_type, source, destination, **extra):
    return {"mapping_type": mapping_type, "from": source, "to": destination, **extra}


class TestAssignPath:
    """Destination path assignment."""

    def test_nested_keys(self):
        data = {}
        assign_path(data, parse_destination_path("contact.address.city"), "Paris")
        assert data == {"contact": {"address": {"city": "Paris"}}}

    def test_final_array_segment_appends(self):
        data = {}
        assign_path(data, parse_destination_path("tags[]"), "a")
        assign_path(data, parse_destination_path("tags[]"), "b")
        assert data == {"tags": ["a", "b"]}

    def test_intermediate_array_segment_reuses_last_element(self):
        data = {}
        assign_path(data, parse_destination_path("items[].name"), "Widget")
        assign_path(data, parse_destination_path("items[].price"), 10)
        assert data == {"items": [{"name": "Widget", "price": 10}]}


class TestCoercion:
    """Schema-driven type coercion."""

    @pytest.mark.parametrize("value,schema,expected", [
        ("42", {"type": "integer"}, 42),
        (" -7 ", {"type": "number"}, -7),
        ("3.5", {"type": "number"}, 3.5),
        ("abc", {"type": "number"}, "abc"),
        (12, {"type": ["null", "integer"]}, 12),
        ("yes", {"type": "boolean"}, True),
        ("N", {"type": "boolean"}, False),
        ("maybe", {"type": "boolean"}, "maybe"),
        (["1", "2"], {"type": "array", "items": {"type": "integer"}}, [1, 2]),
        ("2024-01-02 03:04:05+0000", {"type": "string", "format": "date-time"}, "2024-01-02T03:04:05+00:00"),
        ("2024-01-02T03:04:05", {"type": "string", "format": "date"}, "2024-01-02"),
        ("01/31/2024", {"type": "string", "format": "date"}, "2024-01-31"),
        ("Jan 2, 2024", {"type": "string", "format": "date"}, "2024-01-02"),
        ("not a date", {"type": "string", "format": "date-time"}, "not a date"),
        ("x", {}, "x"),
    ])
    def test_coerce_value(self, value, schema, expected):
        assert coerce_value(value, schema) == expected


class TestFilters:
    """Built-in template filters."""

    def test_text_filters(self):
        assert BUILTIN_FILTERS["snake_case"]("Hello World-Now") == "hello_world_now"
        assert BUILTIN_FILTERS["phone_normalize"]("555.123.4567") == "(555) 123-4567"
        assert BUILTIN_FILTERS["extract_domain"]("Jane@Example.com") == "example.com"
        assert BUILTIN_FILTERS["clean_html"]("<p>Hi <b>there</b></p>") == "Hithere"
        assert BUILTIN_FILTERS["truncate_chars"]("abcdef", 3) == "abc"
        assert BUILTIN_FILTERS["default_if_blank"]("  ", "n/a") == "n/a"


class TestRecordTransformer:
    """Rule application end to end."""

    @pytest.mark.asyncio
    async def test_standard_static_and_template_rules(self):
        sync = make_sync(mappings=[
            _rule("standard", "name", "Name"),
            _rule("static", "web", "Source"),
            _rule("template", "{{ first | uppercase }} {{ last }}", "Full Name"),
        ])
        record = Record(id="1", record={"name": "O'Hara", "first": "scarlett", "last": "O'Hara"})

        result = await RecordTransformer().transform(sync, record)

        assert result == {"Name": "O''Hara", "Source": "web", "Full Name": "SCARLETT O'Hara"}

    @pytest.mark.asyncio
    async def test_legacy_mappings_copy_verbatim(self):
        sync = make_sync(mappings={"name": "contact.name"})
        result = await RecordTransformer().transform(sync, {"name": "O'Hara"})
        assert result == {"contact": {"name": "O'Hara"}}

    @pytest.mark.asyncio
    async def test_later_rules_overwrite_earlier_ones(self):
        sync = make_sync(mappings=[_rule("static", "a", "Field"), _rule("static", "b", "Field")])
        assert await RecordTransformer().transform(sync, {}) == {"Field": "b"}

    @pytest.mark.asyncio
    async def test_templates_compiled_once(self):
        transformer = RecordTransformer()
        sync = make_sync(mappings=[_rule("template", "{{ a }}", "A")])

        await transformer.transform(sync, {"a": 1})
        template = transformer.compile_template("{{ a }}")
        await transformer.transform(sync, {"a": 2})

        assert transformer.compile_template("{{ a }}") is template

    @pytest.mark.asyncio
    async def test_caller_supplied_filters(self):
        transformer = RecordTransformer(filters={"shout": lambda v: f"{v}!"})
        sync = make_sync(mappings=[_rule("template", "{{ word | shout }}", "Word")])
        assert await transformer.transform(sync, {"word": "hey"}) == {"Word": "hey!"}

    @pytest.mark.asyncio
    async def test_templates_cannot_reach_python_internals(self):
        sync = make_sync(mappings=[
            _rule("template", "{{ ''.__class__.__mro__[1].__subclasses__() | length }}", "Leak"),
            _rule("template", "{{ name.__class__ }}", "Type"),
            _rule("template", "{{ name }}", "Name"),
        ])

        result = await RecordTransformer().transform(sync, {"name": "Ada"})

        assert "Leak" not in result
        assert result.get("Type", "") == ""
        assert result["Name"] == "Ada"

    @pytest.mark.asyncio
    async def test_schema_coercion_applied_to_top_level_fields(self):
        sync = make_sync(
            mappings=[_rule("standard", "age", "Age"), _rule("standard", "joined", "Joined")],
            json_schema={"properties": {
                "Age": {"type": "integer"},
                "Joined": {"type": "string", "format": "date"},
            }},
        )
        result = await RecordTransformer().transform(sync, {"age": "42", "joined": "2024-03-04 10:00:00+0000"})
        assert result == {"Age": 42, "Joined": "2024-03-04"}

    @pytest.mark.asyncio
    async def test_vector_rule_uses_embedding_service(self):
        service = MagicMock()
        service.generate_embedding = AsyncMock(return_value=[0.1, 0.2])
        factory = MagicMock(return_value=service)
        config = {"mode": "open_ai", "api_key": "sk-test", "model": "text-embedding-3-small"}
        sync = make_sync(mappings=[
            _rule("vector", "bio", "Embedding", embedding_config=config),
            _rule("vector", "bio", "Raw"),
        ])
        transformer = RecordTransformer(embedding_service_factory=factory)

        await transformer.transform(sync, {"bio": "hello"})
        result = await transformer.transform(sync, {"bio": "hello"})

        assert result == {"Embedding": [0.1, 0.2], "Raw": "hello"}
        factory.assert_called_once_with(config)

    @pytest.mark.asyncio
    async def test_custom_mapping_resolves_through_handler(self):
        index = LookupIndex("tblCompanies", "Name")
        index.add("Acme", "recAcme")
        rule = _rule("custom_mapping", "company", "Company",
                     options={"linked_table_id": "tblCompanies", "match_field": "Name"})
        transformer = RecordTransformer(preload_indexes={link_index_key("tblCompanies", "Name"): index})

        result = await transformer.transform(make_sync(mappings=[rule]), {"company": "Acme"})
        assert result == {"Company": ["recAcme"]}

    @pytest.mark.asyncio
    async def test_custom_mapping_without_match_leaves_path_unset(self):
        rule = _rule("custom_mapping", "company", "Company",
                     options={"linked_table_id": "tblCompanies", "match_field": "Name"})
        sync = make_sync(mappings=[rule, _rule("standard", "name", "Name")])

        result = await RecordTransformer().transform(sync, {"company": "Unknown", "name": "A"})
        assert result == {"Name": "A"}

    @pytest.mark.asyncio
    async def test_failing_rule_returns_partial_record(self):
        service = MagicMock()
        service.generate_embedding = AsyncMock(side_effect=RuntimeError("quota"))
        sync = make_sync(mappings=[
            _rule("standard", "name", "Name"),
            _rule("vector", "bio", "Embedding", embedding_config={"mode": "open_ai", "api_key": "k"}),
            _rule("static", "x", "Static"),
        ])

        transformer = RecordTransformer(embedding_service_factory=MagicMock(return_value=service))
        result = await transformer.transform(sync, {"name": "A", "bio": "b"})

        assert result == {"Name": "A", "Static": "x"}
