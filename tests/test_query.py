from __future__ import annotations

import logging

import pytest

from smart_fhir.clients.pipeline import Descriptor
from smart_fhir.exceptions import LinearizationError
from smart_fhir.query import QueryTerm, build_query_string, linearize, paging, search_params


async def echo(req: Descriptor) -> Descriptor:
    return req


class TestLinearize:
    def test_operator_prefixes_value(self) -> None:
        assert linearize({"age": {"$gt": 30}}) == [
            QueryTerm(param="age", operator="gt", value=(30,))
        ]
        assert build_query_string({"age": {"$gt": 30}}) == "age=gt30"

    def test_all_comparison_operators(self) -> None:
        query = {
            "a": {"$lt": 1},
            "b": {"$gte": 2},
            "c": {"$lte": 3},
            "d": {"$ne": 4},
            "e": {"$eq": 5},
            "f": {"$sa": 6},
            "g": {"$eb": 7},
            "h": {"$ap": 8},
        }
        assert build_query_string(query) == "a=lt1&b=ge2&c=le3&d=ne4&e=eq5&f=sa6&g=eb7&h=ap8"

    def test_sort_follows_input_key_order(self) -> None:
        assert build_query_string({"name": "Smith", "$sort": ["birthdate"]}) == (
            "name=Smith&_sort=birthdate"
        )

    def test_sort_with_direction(self) -> None:
        assert build_query_string({"$sort": [["date", "desc"], "code"]}) == (
            "_sort:desc=date&_sort=code"
        )

    def test_include(self) -> None:
        assert build_query_string({"$include": {"Observation": "subject"}}) == (
            "_include=Observation.subject"
        )
        assert build_query_string({"$include": {"Encounter": ["patient", "practitioner"]}}) == (
            "_include=Encounter.patient&_include=Encounter.practitioner"
        )

    def test_modifier(self) -> None:
        assert build_query_string({"name": {"$exact": "Smith"}}) == "name:exact=Smith"
        assert build_query_string({"active": {"$missing": True}}) == "active:missing=true"

    def test_or_values_are_comma_joined(self) -> None:
        assert build_query_string({"code": {"$or": ["8480-6", "8462-4"]}}) == (
            "code=8480-6,8462-4"
        )

    def test_array_leaf_is_pipe_joined_and_encoded(self) -> None:
        assert build_query_string({"code": ["http://loinc.org", "8480-6"]}) == (
            "code=http%3A%2F%2Floinc.org%7C8480-6"
        )

    def test_and_repeats_parameter(self) -> None:
        assert build_query_string({"date": {"$and": [{"$gt": "2020"}, {"$lt": "2021"}]}}) == (
            "date=gt2020&date=lt2021"
        )

    def test_chained_parameters_with_type(self) -> None:
        query = {"subject": {"$type": "Patient", "name": "Peter"}}
        assert build_query_string(query) == "subject:Patient.name=Peter"
        assert build_query_string({"subject": {"name": {"family": "Doe"}}}) == (
            "subject.name.family=Doe"
        )

    def test_values_are_uri_component_encoded(self) -> None:
        assert build_query_string({"name": "O'Brien & Sons"}) == "name=O'Brien%20%26%20Sons"

    def test_unsupported_value_raises(self) -> None:
        with pytest.raises(LinearizationError) as excinfo:
            linearize({"active": True})
        assert excinfo.value.value_type == "boolean"
        with pytest.raises(LinearizationError):
            linearize({"x": None})

    def test_malformed_sort_entry_is_dropped_with_warning(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="smart_fhir.query"):
            result = build_query_string({"$sort": [["a", "b", "c"], "code"]})
        assert result == "_sort=code"
        assert "malformed $sort" in caplog.text


class TestSearchMiddleware:
    async def test_search_params_appends_query_string(self) -> None:
        result = await search_params.end(echo)(
            {"url": "http://x/Patient", "query": {"name": "Smith"}}
        )
        assert result["url"] == "http://x/Patient?name=Smith"

    async def test_search_params_extends_existing_query(self) -> None:
        result = await search_params.end(echo)(
            {"url": "http://x/Patient?active=true", "query": {"name": "Smith"}}
        )
        assert result["url"] == "http://x/Patient?active=true&name=Smith"

    async def test_search_params_without_query_leaves_url(self) -> None:
        result = await search_params.end(echo)({"url": "http://x/Patient", "query": {}})
        assert result["url"] == "http://x/Patient"

    async def test_paging_maps_count_and_since(self) -> None:
        result = await paging.end(echo)(
            {"url": "http://x/Patient", "count": 10, "since": "2024-01-01"}
        )
        assert result["url"] == "http://x/Patient?_since=2024-01-01&_count=10"

    async def test_paging_extends_existing_query_string(self) -> None:
        chain = search_params.then(paging).end(echo)
        result = await chain(
            {"url": "http://x/Observation?patient=p1", "query": {"code": "8480-6"}, "count": 5}
        )
        assert result["url"] == "http://x/Observation?patient=p1&code=8480-6&_count=5"

    async def test_paging_without_count_or_since_keeps_url(self) -> None:
        result = await paging.end(echo)({"url": "http://x/Patient?name=Smith"})
        assert result["url"] == "http://x/Patient?name=Smith"
