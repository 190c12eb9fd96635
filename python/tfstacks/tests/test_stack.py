"""Tests for stack identity and state-file key naming."""

import pytest

from tfstacks.models.errors import ErrorKind, StackError
from tfstacks.models.stack import (
    LEGACY,
    Stack,
    from_state_file_name,
    parse_stack,
    state_file_name,
    subtract,
)

BASE = "env/tfstate"


@pytest.mark.parametrize(
    "stack, key",
    [
        (LEGACY, "env/tfstate"),
        (Stack(name="database"), "env/tfstate-database"),
        (Stack(name="main", version=5), "env/tfstate-main-5"),
    ],
)
def test_state_file_name_round_trip(stack: Stack, key: str) -> None:
    assert state_file_name(BASE, stack) == key
    assert from_state_file_name(BASE, key) == stack


def test_parsed_key_flags_legacy() -> None:
    stack = from_state_file_name(BASE, "env/tfstate")
    assert stack.is_legacy
    assert str(stack) == "legacy"


def test_parsed_key_has_name_and_version() -> None:
    stack = from_state_file_name(BASE, "env/tfstate-main-5")
    assert stack.name == "main"
    assert stack.version == 5
    assert not stack.is_legacy
    assert str(stack) == "main:5"


@pytest.mark.parametrize(
    "key",
    ["other/tfstate-main", "env/tfstate-Main", "env/tfstate-main-", "env/tfstate-main-x"],
)
def test_foreign_keys_are_rejected(key: str) -> None:
    with pytest.raises(ValueError, match="did not match pattern"):
        from_state_file_name(BASE, key)


def test_base_key_is_matched_literally() -> None:
    with pytest.raises(ValueError):
        from_state_file_name("env.tfstate", "envXtfstate-main")


def test_parse_stack() -> None:
    assert parse_stack("main", "5") == Stack(name="main", version=5)
    assert parse_stack("main") == Stack(name="main")
    assert parse_stack("code", "7", "stable").input_alias == "stable"


@pytest.mark.parametrize(
    "name, version",
    [("", ""), ("", "3"), ("main", "five"), ("main", "-1"), ("Main", ""), ("ma1n", "")],
)
def test_parse_stack_rejects_bad_input(name: str, version: str) -> None:
    with pytest.raises(StackError) as info:
        parse_stack(name, version)
    assert info.value.kind is ErrorKind.INVALID_STACK
    assert info.value.exit_code == 11


def test_equality_ignores_alias_and_directory() -> None:
    plain = Stack(name="code", version=7)
    hinted = Stack(name="code", version=7, input_alias="stable", working_directory="/tmp")
    assert plain == hinted
    assert hash(plain) == hash(hinted)
    assert Stack(name="code", version=8) != plain


def test_legacy_cannot_have_a_name() -> None:
    with pytest.raises(ValueError):
        Stack(name="main", is_legacy=True)


def test_subtract_keeps_order_of_first_list() -> None:
    a = [Stack(name="main", version=6), Stack(name="main", version=4), LEGACY]
    b = [Stack(name="main", version=4, input_alias="old")]
    assert subtract(a, b) == [Stack(name="main", version=6), LEGACY]
    assert subtract(a, []) == a
    assert subtract([], a) == []
