from vibey.tools.schema import build_validator


def test_object_schema_allows_extra_properties_by_default():
    validator = build_validator({"type": "object", "properties": {"a": {"type": "string"}}})

    result = validator.validate({"a": "x", "b": 1})

    assert result.success
    assert result.value == {"a": "x", "b": 1}


def test_additional_properties_false_rejects_extra_keys():
    validator = build_validator(
        {
            "type": "object",
            "properties": {"a": {"type": "string"}},
            "additionalProperties": False,
        }
    )

    result = validator.validate({"a": "x", "b": 1})

    assert not result.success
    assert "b" in (result.error or "")


def test_required_and_type_errors_name_the_location():
    validator = build_validator(
        {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "limit": {"type": "integer"},
            },
            "required": ["path"],
        }
    )

    missing = validator.validate({"limit": 3})
    wrong_type = validator.validate({"path": 42})

    assert not missing.success
    assert "path" in (missing.error or "")
    assert not wrong_type.success
    assert (wrong_type.error or "").startswith("path:")


def test_optional_properties_are_not_materialized():
    validator = build_validator(
        {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "offset": {"type": "integer"},
            },
            "required": ["path"],
        }
    )

    result = validator.validate({"path": "a.txt"})

    assert result.success
    assert result.value == {"path": "a.txt"}


def test_scalars_are_strict():
    integer = build_validator({"type": "integer"})
    number = build_validator({"type": "number"})
    boolean = build_validator({"type": "boolean"})
    string = build_validator({"type": "string"})

    assert integer.validate(3).success
    assert not integer.validate(True).success
    assert not integer.validate("3").success
    assert number.validate(2.5).success
    assert number.validate(5).value == 5
    assert isinstance(number.validate(5).value, int)
    assert not number.validate("2.5").success
    assert boolean.validate(False).success
    assert not boolean.validate("true").success
    assert not string.validate(1).success


def test_enum_accepts_only_listed_values():
    validator = build_validator({"type": "string", "enum": ["asc", "desc"]})

    assert validator.validate("asc").success
    assert not validator.validate("up").success


def test_array_items_are_validated():
    validator = build_validator({"type": "array", "items": {"type": "string"}})

    assert validator.validate(["a", "b"]).value == ["a", "b"]
    assert not validator.validate(["a", 1]).success


def test_nested_objects_keep_property_names_that_clash_with_python():
    validator = build_validator(
        {
            "type": "object",
            "properties": {
                "from": {"type": "string"},
                "model_config": {
                    "type": "object",
                    "properties": {"self": {"type": "integer"}},
                },
            },
        }
    )

    result = validator.validate({"from": "x", "model_config": {"self": 1, "extra": True}})

    assert result.success
    assert result.value == {"from": "x", "model_config": {"self": 1, "extra": True}}


def test_unknown_and_union_schemas_accept_anything():
    for schema in (
        None,
        "not a schema",
        {},
        {"type": ["string", "null"]},
        {"anyOf": [{"type": "string"}, {"type": "integer"}]},
        {"oneOf": [{"type": "string"}]},
        {"type": "mystery"},
    ):
        validator = build_validator(schema)
        assert validator.accepts_anything
        assert validator.validate({"anything": [1, 2, 3]}).success


def test_object_without_properties_accepts_any_mapping():
    validator = build_validator({"type": "object"})

    assert validator.validate({"k": 1}).success
    assert not validator.validate([1]).success


def test_validator_keeps_original_schema():
    schema = {"type": "object", "properties": {"q": {"type": "string"}}}

    assert build_validator(schema).json_schema == schema


def test_enum_matching_is_type_exact():
    validator = build_validator(
        {
            "type": "object",
            "properties": {"n": {"enum": [1, 2]}, "mode": {"enum": ["fast", 0.5]}},
        }
    )

    assert validator.validate({"n": 2}).value == {"n": 2}
    assert not validator.validate({"n": True}).success
    assert not validator.validate({"n": "1"}).success
    assert not validator.validate({"n": 1.0}).success
    assert validator.validate({"mode": 0.5}).success
    rejected = validator.validate({"mode": "slow"})
    assert not rejected.success
    assert (rejected.error or "").startswith("mode:")
