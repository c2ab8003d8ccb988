"""Tests for typed step conditions."""

import pytest
from pydantic import ValidationError

from waypoint.conditions import (
    ContextCheckLogic,
    CustomLogic,
    EnvironmentCheck,
    ExpressionCheck,
    FileExistsLogic,
    StepCondition,
    UnknownConditionLogic,
    UnknownCustomCheck,
    normalize_condition_type,
    normalize_custom_type,
)


def test_condition_type_spellings_are_normalized():
    assert normalize_condition_type("file-exists") == "file-exists"
    assert normalize_condition_type("FILE_EXISTS") == "file-exists"
    assert normalize_condition_type(" Task_Status ") == "task-status"
    assert normalize_condition_type("mystery") is None
    assert normalize_condition_type(42) is None


def test_custom_type_aliases():
    assert normalize_custom_type("javascript") == "expression"
    assert normalize_custom_type("file-content-check") == "file_content_check"
    assert normalize_custom_type("llm_judgement") is None


def test_logic_is_dispatched_on_condition_type():
    condition = StepCondition.model_validate(
        {
            "name": "files",
            "conditionType": "FILE_EXISTS",
            "logic": {"files": ["package.json"], "directories": ["src"]},
        }
    )
    assert condition.condition_type == "file-exists"
    assert isinstance(condition.logic, FileExistsLogic)
    assert condition.logic.files == ["package.json"]
    assert condition.is_required is True
    assert not condition.is_unknown


def test_snake_case_keys_are_accepted():
    condition = StepCondition(
        name="ctx",
        condition_type="context-check",
        logic={"required_properties": ["taskId"]},
    )
    assert isinstance(condition.logic, ContextCheckLogic)
    assert condition.logic.required_properties == ["taskId"]


def test_unknown_kind_is_preserved():
    condition = StepCondition.model_validate(
        {"name": "odd", "conditionType": "astrology", "logic": {"sign": "leo"}}
    )
    assert isinstance(condition.logic, UnknownConditionLogic)
    assert condition.logic.declared_type == "astrology"
    assert condition.logic.payload == {"sign": "leo"}
    assert condition.is_unknown


def test_custom_logic_flat_payload_is_nested():
    condition = StepCondition.model_validate(
        {
            "name": "expr",
            "conditionType": "custom-logic",
            "logic": {"type": "javascript", "expression": "ready == true"},
        }
    )
    assert isinstance(condition.logic, CustomLogic)
    assert isinstance(condition.logic.check, ExpressionCheck)
    assert condition.logic.check.expression == "ready == true"


def test_custom_logic_unknown_type():
    condition = StepCondition.model_validate(
        {
            "name": "judge",
            "conditionType": "custom-logic",
            "logic": {"type": "llm_judgement", "expression": "looks good"},
        }
    )
    assert isinstance(condition.logic.check, UnknownCustomCheck)
    assert condition.logic.check.declared_type == "llm_judgement"
    assert condition.is_unknown


def test_environment_check_requires_env_var():
    with pytest.raises(ValidationError):
        StepCondition.model_validate(
            {
                "name": "env",
                "conditionType": "custom-logic",
                "logic": {"type": "environment_check", "parameters": {}},
            }
        )


def test_environment_check_parameters():
    condition = StepCondition.model_validate(
        {
            "name": "env",
            "conditionType": "custom-logic",
            "logic": {
                "type": "environment_check",
                "parameters": {"envVar": "CI", "checkType": "equals", "expectedValue": "1"},
            },
        }
    )
    check = condition.logic.check
    assert isinstance(check, EnvironmentCheck)
    assert check.parameters.env_var == "CI"
    assert check.parameters.check_type == "equals"


def test_condition_round_trips_through_json_dump():
    condition = StepCondition.model_validate(
        {"name": "odd", "conditionType": "astrology", "logic": {"sign": "leo"}}
    )
    again = StepCondition.model_validate(condition.model_dump(mode="json", by_alias=True))
    assert again == condition


def test_non_mapping_logic_is_rejected():
    with pytest.raises(ValidationError):
        StepCondition.model_validate(
            {"name": "bad", "conditionType": "file-exists", "logic": ["a"]}
        )
