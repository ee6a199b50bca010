import pytest

from shellrunner.actions import default_catalog
from shellrunner.errors import InvalidParameters, UnknownAction
from shellrunner.validation import ParamValidator, ps_quote


def test_ps_quote_doubles_single_quotes():
    assert ps_quote("O'Brien") == "'O''Brien'"
    assert ps_quote("a’b") == "'a’’b'"


def test_render_value_types():
    rendered = ParamValidator().render({
        "Identity": "alice@contoso.com",
        "ResultSize": 10,
        "Archive": True,
        "Skip": None,
        "Types": ["UserMailbox", "SharedMailbox"],
    })
    assert rendered == (
        "-Identity 'alice@contoso.com' -ResultSize 10 -Archive:$true "
        "-Types 'UserMailbox','SharedMailbox'"
    )


def test_injection_stays_inside_literal():
    rendered = ParamValidator().render({"Identity": "x'; Remove-Mailbox -Identity y; '"})
    assert rendered == "-Identity 'x''; Remove-Mailbox -Identity y; '''"


@pytest.mark.parametrize("params", [
    {"bad name": 1},
    {"-Identity": "x"},
    {"Identity": {"nested": 1}},
    {"Identity": []},
    {"Identity": [["a"]]},
])
def test_render_rejects_bad_params(params):
    with pytest.raises(InvalidParameters):
        ParamValidator().render(params)


def test_allow_list():
    v = ParamValidator({"Identity"})
    assert v.render({"Identity": "x"}) == "-Identity 'x'"
    with pytest.raises(InvalidParameters, match="Filter"):
        v.render({"Filter": "x"})


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), 2 ** 70, -(2 ** 63) - 1])
def test_render_rejects_numbers_without_literal(value):
    with pytest.raises(InvalidParameters):
        ParamValidator().render({"ResultSize": value})
    with pytest.raises(InvalidParameters):
        ParamValidator().render({"ResultSize": [1, value]})


def test_int64_bounds_render():
    assert ParamValidator().render({"A": 2 ** 63 - 1, "B": -(2 ** 63)}) == (
        f"-A {2 ** 63 - 1} -B {-(2 ** 63)}"
    )

def test_catalog_alias_builds_json_invocation():
    inv = default_catalog().build("Get-OrgConfig", {})
    assert inv.display == "Get-OrganizationConfig"
    assert inv.command == "Get-OrganizationConfig | ConvertTo-Json -Depth 4 -Compress"
    assert inv.json_output


def test_catalog_is_case_insensitive():
    inv = default_catalog().build("get-mailbox", {"Identity": "bob", "ResultSize": 5})
    assert inv.display == "Get-Mailbox -Identity 'bob' -ResultSize 5"


def test_catalog_unknown_action():
    with pytest.raises(UnknownAction) as exc:
        default_catalog().build("Remove-Everything", {})
    assert exc.value.action == "Remove-Everything"


def test_catalog_rejects_params_outside_allow_list():
    with pytest.raises(InvalidParameters):
        default_catalog().build("Get-OrganizationConfig", {"Identity": "x"})


def test_invoke_script_passes_command_through():
    inv = default_catalog().build("Invoke-Script", {"command": "Get-Date\nGet-Host"})
    assert inv.command == "Get-Date\nGet-Host"
    assert inv.display == "Get-Date"
    assert not inv.json_output


def test_invoke_script_requires_command():
    with pytest.raises(InvalidParameters):
        default_catalog().build("Invoke-Script", {"command": "  "})
