import pytest
from pydantic import BaseModel

from factcheck.core.exceptions import LLMOutputError
from factcheck.utils.json_parser import (
    extract_json_array,
    parse_model_list,
    parse_model_object,
    strip_code_fences,
)


class Item(BaseModel):
    name: str
    value: int


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences("```markdown\n# Title\n```") == "# Title"
    assert strip_code_fences("") == ""


def test_array_is_found_inside_prose():
    text = 'Here is the result:\n[{"name": "a", "value": 1}]\nHope this helps.'

    assert extract_json_array(text) == '[{"name": "a", "value": 1}]'
    assert extract_json_array("no brackets here") is None


def test_parse_model_list_validates_items():
    items = parse_model_list('```json\n[{"name": "a", "value": 1}, {"name": "b", "value": 2}]\n```', Item)

    assert [item.name for item in items] == ["a", "b"]


@pytest.mark.parametrize(
    "text",
    [
        "plain prose",
        "[{'name': 'a'}]",
        '[{"name": "a", "value": "many"}]',
    ],
)
def test_parse_model_list_raises_single_error_type(text):
    with pytest.raises(LLMOutputError):
        parse_model_list(text, Item)


def test_parse_model_object():
    assert parse_model_object('prefix {"name": "x", "value": 3} suffix', Item).value == 3

    with pytest.raises(LLMOutputError):
        parse_model_object("[]", Item)
