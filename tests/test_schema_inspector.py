import json

import pytest

from estatefeed.feed.schema_inspector import (
    MIXED,
    SchemaInspector,
    detect_type,
    merge_types,
    parent_path,
)


def test_three_level_nested_fixture():
    payload = json.loads('{"projects":[{"id":1,"building":{"floors":5}}]}')

    fields = SchemaInspector().inspect(payload)

    assert set(fields) == {
        "projects",
        "projects[]",
        "projects[].id",
        "projects[].building",
        "projects[].building.floors",
    }
    assert fields["projects"].type == "array"
    assert fields["projects[]"].type == "object"
    assert fields["projects[].id"].type == "int"
    assert fields["projects[].id"].occurrences == 1
    assert fields["projects[].building.floors"].type == "int"
    assert fields["projects[].building.floors"].occurrences == 1
    assert fields["projects[].building.floors"].example_value == "5"
    assert [fields[p].depth for p in ("projects", "projects[]", "projects[].id")] == [1, 2, 3]
    assert fields["projects[].building.floors"].depth == 4
    assert all(f.is_always_present for f in fields.values())


def test_extra_field_on_one_element_is_not_always_present():
    payload = {"items": [{"a": 1}, {"a": 2, "note": "corner"}, {"a": 3}]}

    fields = SchemaInspector().inspect(payload)

    note = fields["items[].note"]
    assert note.occurrences == 1
    assert note.null_count == 0
    assert note.is_always_present is False
    assert fields["items[].a"].occurrences == 3
    assert fields["items[].a"].is_always_present is True
    assert fields["items[]"].occurrences == 3


def test_disagreeing_types_become_mixed():
    fields = SchemaInspector().inspect([{"v": 1}, {"v": "one"}, {"v": 2.5}])

    assert fields["[]"].type == "object"
    assert fields["[].v"].type == MIXED
    assert fields["[].v"].example_value == "1"


def test_nulls_do_not_change_type():
    fields = SchemaInspector().inspect([{"v": None}, {"v": 5}, {"v": None}])

    v = fields["[].v"]
    assert v.type == "int"
    assert v.occurrences == 3
    assert v.null_count == 2


@pytest.mark.parametrize("policy", ["null", "mixed"])
def test_all_null_path_uses_configured_type(policy):
    fields = SchemaInspector(all_null_type=policy).inspect({"a": None, "b": [None, None]})

    assert fields["a"].type == policy
    assert fields["a"].null_count == 1
    assert fields["b[]"].type == policy
    assert fields["b[]"].null_count == 2
    assert fields["b"].type == "array"


def test_max_depth_caps_containers():
    payload = {"a": {"b": {"c": {"d": 1}}}, "top": 1}

    fields = SchemaInspector(max_depth=2).inspect(payload)

    assert fields["a"].type == "object"
    assert fields["a.b"].type == MIXED
    assert fields["a.b"].capped is True
    assert "a.b.c" not in fields
    assert fields["top"].capped is False


def test_self_similar_payload_is_bounded():
    node: dict = {"v": 1}
    for _ in range(50):
        node = {"child": node}

    fields = SchemaInspector(max_depth=10).inspect(node)

    assert max(f.depth for f in fields.values()) == 10
    assert sum(1 for f in fields.values() if f.capped) == 1


def test_arrays_are_sampled():
    payload = {"apartments": [{"i": n} for n in range(1000)]}

    fields = SchemaInspector(array_sample_size=5).inspect(payload)

    assert fields["apartments"].occurrences == 1
    assert fields["apartments[]"].occurrences == 5
    assert fields["apartments[].i"].occurrences == 5


def test_array_sampling_reads_only_the_sample():
    class CountingList(list):
        pulled = 0

        def __iter__(self):
            for item in super().__iter__():
                self.pulled += 1
                yield item

    apartments = CountingList({"i": n} for n in range(10_000))

    SchemaInspector(array_sample_size=5).inspect({"apartments": apartments})

    assert apartments.pulled == 5


def test_examples_are_truncated_and_booleans_rendered():
    fields = SchemaInspector(example_max_length=5).inspect(
        {"name": "Sunrise Towers", "ready": True}
    )

    assert fields["name"].example_value == "Sunri"
    assert fields["ready"].type == "bool"
    assert fields["ready"].example_value == "true"


def test_scalar_root():
    fields = SchemaInspector().inspect(42)
    assert fields["$"].type == "int"


def test_inspect_is_repeatable():
    inspector = SchemaInspector()
    first = inspector.inspect({"a": 1})
    second = inspector.inspect({"a": 1})
    assert second["a"].occurrences == 1
    assert first is not second


def test_invalid_configuration():
    with pytest.raises(ValueError):
        SchemaInspector(max_depth=0)
    with pytest.raises(ValueError):
        SchemaInspector(array_sample_size=0)


def test_helpers():
    assert detect_type(True) == "bool"
    assert detect_type(3) == "int"
    assert detect_type({}) == "object"
    assert merge_types("null", "string") == "string"
    assert merge_types("int", "null") == "int"
    assert merge_types("int", "float") == MIXED
    assert parent_path("a[].b") == "a[]"
    assert parent_path("a[]") == "a"
    assert parent_path("a.b") == "a"
    assert parent_path("a") == ""


def test_distinct_values_are_counted_per_scalar_path():
    payload = [
        {"status": "free", "ready": True},
        {"status": "sold", "ready": False},
        {"status": "free"},
    ]

    fields = SchemaInspector().inspect(payload)

    assert fields["[].status"].distinct_values == {"free": 2, "sold": 1}
    assert fields["[].ready"].distinct_values == {"true": 1, "false": 1}
    assert fields["[]"].distinct_values == {}


def test_distinct_values_stop_one_past_the_threshold():
    payload = [{"code": f"c{n}"} for n in range(10)] + [{"code": "c0"}]

    fields = SchemaInspector(enum_threshold=3).inspect(payload)

    distinct = fields["[].code"].distinct_values
    assert len(distinct) == 4
    assert distinct["c0"] == 2
