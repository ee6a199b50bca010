from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import InvalidParameters, UnknownAction
from .validation import ParamValidator


@dataclass(frozen=True)
class Invocation:
    command: str
    display: str
    json_output: bool = False


@dataclass
class ActionSpec:
    """A named remote operation.

    ``cmdlet`` actions become ``<cmdlet> <rendered params>``; ``builder``
    actions construct the command text themselves.
    """
    name: str
    cmdlet: Optional[str] = None
    allowed_params: Optional[set[str]] = None
    json_output: bool = False
    json_depth: int = 4
    aliases: tuple[str, ...] = ()
    builder: Optional[Callable[[dict], tuple[str, str]]] = None
    validator: ParamValidator = field(init=False)

    def __post_init__(self):
        self.validator = ParamValidator(self.allowed_params)

    def build(self, params: dict) -> Invocation:
        if self.builder is not None:
            command, display = self.builder(params)
            return Invocation(command=command, display=display, json_output=self.json_output)
        rendered = self.validator.render(params)
        base = f"{self.cmdlet} {rendered}".strip()
        command = base
        if self.json_output:
            command = f"{base} | ConvertTo-Json -Depth {self.json_depth} -Compress"
        return Invocation(command=command, display=base, json_output=self.json_output)


def _script_builder(params: dict) -> tuple[str, str]:
    script = params.get("command")
    if not isinstance(script, str) or not script.strip():
        raise InvalidParameters("Invoke-Script requires a non-empty 'command' string")
    first_line = script.strip().splitlines()[0]
    return script, first_line[:200]


class ActionCatalog:
    def __init__(self):
        self._actions: dict[str, ActionSpec] = {}

    def register(self, spec: ActionSpec) -> ActionSpec:
        for key in (spec.name, *spec.aliases):
            self._actions[key.lower()] = spec
        return spec

    def names(self) -> list[str]:
        return sorted({spec.name for spec in self._actions.values()})

    def get(self, action: str) -> ActionSpec:
        spec = self._actions.get((action or "").lower())
        if spec is None:
            raise UnknownAction(action)
        return spec

    def build(self, action: str, params: dict | None) -> Invocation:
        return self.get(action).build(params or {})


def default_catalog() -> ActionCatalog:
    catalog = ActionCatalog()
    catalog.register(ActionSpec(
        name="Get-OrganizationConfig",
        cmdlet="Get-OrganizationConfig",
        allowed_params=set(),
        json_output=True,
        aliases=("Get-OrgConfig",),
    ))
    catalog.register(ActionSpec(
        name="Get-AcceptedDomain",
        cmdlet="Get-AcceptedDomain",
        allowed_params={"Identity"},
        json_output=True,
    ))
    catalog.register(ActionSpec(
        name="Get-Mailbox",
        cmdlet="Get-Mailbox",
        allowed_params={"Identity", "ResultSize", "RecipientTypeDetails", "Filter"},
        json_output=True,
        json_depth=3,
    ))
    catalog.register(ActionSpec(
        name="Invoke-Script",
        builder=_script_builder,
        aliases=("Run-Script",),
    ))
    return catalog
