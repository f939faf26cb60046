"""
Tests for the field exposure filter.
"""

from __future__ import annotations

from domain_engine.runtime.exposure import FieldExposureFilter
from domain_engine.specs.registry import EntityRegistry


class TestFieldExposureFilter:
    def test_row_projection(self, registry: EntityRegistry) -> None:
        exposure = FieldExposureFilter(registry)
        row = {"id": "e1", "firstName": "Jane", "ssn": "123-45-6789", "stray": 1}
        assert exposure.project("Employee", row) == {"id": "e1", "firstName": "Jane"}

    def test_none_and_lists_keep_shape(self, registry: EntityRegistry) -> None:
        exposure = FieldExposureFilter(registry)
        assert exposure.project("Employee", None) is None
        assert exposure.project("Employee", []) == []
        rows = [{"id": "a", "ssn": "x"}, {"id": "b", "ssn": "y"}]
        assert exposure.project("Employee", rows) == [{"id": "a"}, {"id": "b"}]

    def test_recurses_into_relations(self, registry: EntityRegistry) -> None:
        exposure = FieldExposureFilter(registry)
        row = {
            "id": "e1",
            "ssn": "secret",
            "department": {"id": "d1", "name": "R&D", "budgetCode": "BC-1"},
            "mentors": [{"id": "e2", "ssn": "also secret"}],
            "friends": [],
        }
        assert exposure.project("Employee", row) == {
            "id": "e1",
            "department": {"id": "d1", "name": "R&D"},
            "mentors": [{"id": "e2"}],
            "friends": [],
        }

    def test_hidden_fields(self, registry: EntityRegistry) -> None:
        exposure = FieldExposureFilter(registry)
        assert exposure.hidden_fields("Employee") == ["ssn"]
        assert exposure.hidden_fields("Department") == ["budgetCode"]
