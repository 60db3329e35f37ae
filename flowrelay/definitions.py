"""Pydantic models for authored flow definitions.

Definitions arrive as loosely typed JSON documents. They are validated here once
and then compiled into a :class:`~flowrelay.graph.FlowGraph`; nothing in the
engine looks at the raw document again.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

COORDINATOR_ROLE = "__coordinator__"


class _DefinitionModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StepType(str, Enum):
    # human actions
    FORM = "FORM"
    QUESTIONNAIRE = "QUESTIONNAIRE"
    FILE_REQUEST = "FILE_REQUEST"
    TODO = "TODO"
    APPROVAL = "APPROVAL"
    ACKNOWLEDGEMENT = "ACKNOWLEDGEMENT"
    ESIGN = "ESIGN"
    DECISION = "DECISION"
    CUSTOM_ACTION = "CUSTOM_ACTION"
    WEB_APP = "WEB_APP"
    PDF_FORM = "PDF_FORM"
    # control
    SINGLE_CHOICE_BRANCH = "SINGLE_CHOICE_BRANCH"
    MULTI_CHOICE_BRANCH = "MULTI_CHOICE_BRANCH"
    PARALLEL_BRANCH = "PARALLEL_BRANCH"
    WAIT = "WAIT"
    SUB_FLOW = "SUB_FLOW"
    # automations, completed by an external executor
    AI_CUSTOM_PROMPT = "AI_CUSTOM_PROMPT"
    AI_EXTRACT = "AI_EXTRACT"
    AI_SUMMARIZE = "AI_SUMMARIZE"
    AI_WRITE = "AI_WRITE"
    SYSTEM_WEBHOOK = "SYSTEM_WEBHOOK"
    SYSTEM_EMAIL = "SYSTEM_EMAIL"


class DefinitionStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class ResolutionType(str, Enum):
    CONTACT_TBD = "CONTACT_TBD"
    FIXED_CONTACT = "FIXED_CONTACT"
    WORKSPACE_INITIALIZER = "WORKSPACE_INITIALIZER"
    KICKOFF_FORM_FIELD = "KICKOFF_FORM_FIELD"
    FLOW_VARIABLE = "FLOW_VARIABLE"
    ROUND_ROBIN = "ROUND_ROBIN"
    RULES = "RULES"


class CompletionMode(str, Enum):
    ALL = "ALL"
    MAJORITY = "MAJORITY"
    ANY = "ANY"

    @classmethod
    def parse(cls, value: Any) -> "CompletionMode":
        text = str(value).upper()
        if text in ("ONE", "ANY_ONE"):
            return cls.ANY
        return cls(text)


class DueUnit(str, Enum):
    MINUTES = "MINUTES"
    HOURS = "HOURS"
    DAYS = "DAYS"
    WEEKS = "WEEKS"


class DueType(str, Enum):
    RELATIVE = "RELATIVE"
    FIXED = "FIXED"
    BEFORE_FLOW_DUE = "BEFORE_FLOW_DUE"


class DueSpec(_DefinitionModel):
    """Relative, fixed or "before flow due" deadline."""

    type: DueType = DueType.RELATIVE
    value: float = 0
    unit: DueUnit = DueUnit.HOURS
    date: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            # legacy {value, unit} documents carry no type
            data.setdefault("type", DueType.RELATIVE.value)
            if isinstance(data.get("type"), str):
                data["type"] = data["type"].upper()
            if isinstance(data.get("unit"), str):
                data["unit"] = data["unit"].upper()
        return data

    @model_validator(mode="after")
    def _check_fixed_date(self) -> "DueSpec":
        if self.type == DueType.FIXED and self.date is None:
            raise ValueError("FIXED due dates require a date")
        return self


class FlowDueDates(_DefinitionModel):
    flow_due: Optional[DueSpec] = Field(default=None, alias="flowDue")


class RuleCondition(_DefinitionModel):
    equals: Optional[str] = None
    contains: Optional[str] = None
    not_empty: bool = Field(default=False, alias="notEmpty")


class AssigneeRule(_DefinitionModel):
    when: RuleCondition = Field(alias="if")
    then: "Resolution"


class RulesConfig(_DefinitionModel):
    source: str = "KICKOFF_FORM_FIELD"
    field_key: Optional[str] = Field(default=None, alias="fieldKey")
    variable_key: Optional[str] = Field(default=None, alias="variableKey")
    step_output_ref: Optional[str] = Field(default=None, alias="stepOutputRef")
    rules: List[AssigneeRule] = Field(default_factory=list)
    default: Optional["Resolution"] = None


class Resolution(_DefinitionModel):
    """How a role placeholder turns into a concrete identity at run start."""

    type: ResolutionType = ResolutionType.CONTACT_TBD
    email: Optional[str] = None
    emails: List[str] = Field(default_factory=list)
    field_key: Optional[str] = Field(default=None, alias="fieldKey")
    variable_key: Optional[str] = Field(default=None, alias="variableKey")
    config: Optional[RulesConfig] = None


class RolePlaceholder(_DefinitionModel):
    name: str
    role_id: Optional[str] = Field(default=None, alias="roleId")
    resolution: Resolution = Field(default_factory=Resolution)
    coordinator: bool = False

    @model_validator(mode="before")
    @classmethod
    def _role_options(cls, data: Any) -> Any:
        if isinstance(data, dict) and "coordinator" not in data:
            options = data.get("roleOptions") or {}
            if "coordinatorToggle" in options:
                data = {**data, "coordinator": bool(options["coordinatorToggle"])}
        return data


class Milestone(_DefinitionModel):
    name: str
    boundary: int
    milestone_id: Optional[str] = Field(default=None, alias="milestoneId")


class ReviewConfig(_DefinitionModel):
    enabled: bool = True
    criteria: Optional[str] = None


class Condition(_DefinitionModel):
    """A comparison evaluated by automatic branch steps."""

    source: str
    operator: str = "equals"
    value: Any = None


class BranchPathDef(_DefinitionModel):
    path_id: str = Field(alias="pathId")
    label: Optional[str] = None
    condition: Optional[Condition] = None
    conditions: List[Condition] = Field(default_factory=list)
    condition_logic: str = Field(default="ALL", alias="conditionLogic")
    steps: List["StepDef"] = Field(default_factory=list)

    def all_conditions(self) -> List[Condition]:
        return ([self.condition] if self.condition else []) + list(self.conditions)


class OutcomeDef(_DefinitionModel):
    """One outcome of a decision and the branch path(s) it selects."""

    key: str
    label: Optional[str] = None
    targets: List[str] = Field(default_factory=list)
    steps: List["StepDef"] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "key" not in data:
                data["key"] = data.get("outcomeId") or data.get("id")
            target = data.pop("branchPath", None) or data.pop("target", None)
            if target is not None and "targets" not in data:
                data["targets"] = target if isinstance(target, list) else [target]
        return data


class StepDef(_DefinitionModel):
    """A single authored step.

    Fields may sit at the top level or under ``config``; top-level values win.
    ``assignee`` holds a role name for single-assignee steps while
    ``assignees`` lists the roles of a group step.
    """

    id: str
    type: StepType
    name: Optional[str] = None
    assignee: Optional[str] = None
    assignees: List[str] = Field(default_factory=list)
    completion_mode: Optional[CompletionMode] = None
    due: Optional[DueSpec] = None
    ai_review: Optional[ReviewConfig] = Field(default=None, alias="aiReview")
    outcomes: List[OutcomeDef] = Field(default_factory=list)
    paths: List[BranchPathDef] = Field(default_factory=list)
    branch_path: Optional[str] = Field(default=None, alias="branchPath")
    parallel_group: Optional[str] = Field(default=None, alias="parallelGroup")
    sub_flow_id: Optional[str] = Field(default=None, alias="subFlowId")
    inputs: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        config = data.get("config") or {}
        merged = {**config, **{k: v for k, v in data.items() if k != "config"}}
        if "id" not in merged and "stepId" in merged:
            merged["id"] = merged["stepId"]
        if "subFlowId" not in merged and "flowTemplateId" in merged:
            merged["subFlowId"] = merged["flowTemplateId"]
        if isinstance(merged.get("type"), str):
            merged["type"] = merged["type"].upper()

        completion = merged.pop("completion", None)
        if isinstance(completion, dict) and completion.get("mode"):
            merged.setdefault("completion_mode", completion["mode"])
        if "completionMode" in merged:
            merged.setdefault("completion_mode", merged.pop("completionMode"))

        assignee = merged.get("assignee")
        group = merged.get("assignees")
        if isinstance(assignee, list):
            group, assignee = assignee, None
            merged["assignee"] = None
        if isinstance(group, (str, dict)):
            group = [group]
        if group:
            refs = [_role_ref(ref) for ref in group]
            # a one-member list without a completion mode is a plain assignee
            if len(refs) == 1 and not merged.get("completion_mode"):
                merged["assignee"], merged["assignees"] = refs[0], []
            else:
                merged["assignees"] = refs
                merged.pop("assignee", None)
        elif assignee is not None:
            merged["assignee"] = _role_ref(assignee)

        outcomes = merged.get("outcomes")
        if isinstance(outcomes, dict):
            merged["outcomes"] = [
                {"key": key, "targets": target if isinstance(target, list) else [target]}
                for key, target in outcomes.items()
            ]
        return merged

    @field_validator("completion_mode", mode="before")
    @classmethod
    def _completion_mode(cls, value: Any) -> Any:
        if value is None or isinstance(value, CompletionMode):
            return value
        return CompletionMode.parse(value)

    @property
    def is_group(self) -> bool:
        return bool(self.assignees)

    @property
    def display_name(self) -> str:
        return self.name or self.id


def _role_ref(ref: Any) -> str:
    """Accept ``"Client"`` as well as ``{"mode": "PLACEHOLDER", "roleId": ...}``."""
    if isinstance(ref, dict):
        value = ref.get("roleId") or ref.get("placeholderId") or ref.get("name")
        if not value:
            raise ValueError(f"Invalid assignee reference: {ref}")
        return str(value)
    return str(ref)


class KickoffField(_DefinitionModel):
    field_id: str = Field(alias="fieldId")
    label: Optional[str] = None
    type: str = "TEXT"
    required: bool = False


class KickoffConfig(_DefinitionModel):
    enabled: bool = Field(default=True, alias="kickoffFormEnabled")
    fields: List[KickoffField] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if isinstance(data, dict) and "fields" not in data and "kickoffFormFields" in data:
            data = {**data, "fields": data["kickoffFormFields"]}
        return data


class FlowDefinition(_DefinitionModel):
    """A versioned flow template."""

    id: str
    name: Optional[str] = None
    version: int = 1
    status: DefinitionStatus = DefinitionStatus.PUBLISHED
    roles: List[RolePlaceholder] = Field(default_factory=list)
    milestones: List[Milestone] = Field(default_factory=list)
    due_dates: FlowDueDates = Field(default_factory=FlowDueDates, alias="dueDates")
    kickoff: Optional[KickoffConfig] = None
    steps: List[StepDef] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if isinstance(data, dict) and "roles" not in data and "assigneePlaceholders" in data:
            data = {**data, "roles": data["assigneePlaceholders"]}
        return data

    @classmethod
    def parse(cls, raw: Dict[str, Any]) -> "FlowDefinition":
        """Validate a raw definition document.

        Raises:
            ValidationError: If the document does not describe a definition.
        """
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid flow definition: {exc}") from exc

    @property
    def is_published(self) -> bool:
        return self.status == DefinitionStatus.PUBLISHED

    def role(self, ref: str) -> Optional[RolePlaceholder]:
        """Look a role up by name or role id."""
        for role in self.roles:
            if role.name == ref or (role.role_id is not None and role.role_id == ref):
                return role
        return None


AssigneeRule.model_rebuild()
RulesConfig.model_rebuild()
Resolution.model_rebuild()
BranchPathDef.model_rebuild()
OutcomeDef.model_rebuild()
StepDef.model_rebuild()
