"""
Segment Criteria Schemas

Typed model of the audience rules built in the segment editor:

- Field catalog types (categories, fields, operators) as described by the
  external catalog service
- Conditions as a tagged union (profile attribute, segment reference,
  QuickList reference)
- Condition groups and the ordered criteria tree
- The flat rule record persisted one-per-condition
- Validation results and the API request/response payloads

All operator spellings funnel through OPERATOR_ALIASES.
"""

from __future__ import annotations

import json
import math
import uuid
from enum import Enum
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Annotated


# ============================================
# Operators
# ============================================


class OperatorSymbol(str, Enum):
    """Canonical operator symbols used in persisted rules."""

    EQ = "="
    NEQ = "!="
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    IN = "IN"
    NOT_IN = "NOT IN"
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"


LIST_OPERATORS = frozenset({OperatorSymbol.IN, OperatorSymbol.NOT_IN})
REFERENCE_OPERATORS = LIST_OPERATORS

# Keys are lowercase with spaces/dashes collapsed to underscores.
OPERATOR_ALIASES: Dict[str, OperatorSymbol] = {
    # Symbols
    "=": OperatorSymbol.EQ,
    "==": OperatorSymbol.EQ,
    "!=": OperatorSymbol.NEQ,
    "<>": OperatorSymbol.NEQ,
    ">": OperatorSymbol.GT,
    "<": OperatorSymbol.LT,
    ">=": OperatorSymbol.GTE,
    "<=": OperatorSymbol.LTE,
    "in": OperatorSymbol.IN,
    "not_in": OperatorSymbol.NOT_IN,
    "like": OperatorSymbol.LIKE,
    "not_like": OperatorSymbol.NOT_LIKE,
    # Editor labels
    "equals": OperatorSymbol.EQ,
    "not_equals": OperatorSymbol.NEQ,
    "greater_than": OperatorSymbol.GT,
    "less_than": OperatorSymbol.LT,
    "greater_than_or_equals": OperatorSymbol.GTE,
    "greater_than_or_equal": OperatorSymbol.GTE,
    "less_than_or_equals": OperatorSymbol.LTE,
    "less_than_or_equal": OperatorSymbol.LTE,
    "contains": OperatorSymbol.LIKE,
    "not_contains": OperatorSymbol.NOT_LIKE,
    "does_not_contain": OperatorSymbol.NOT_LIKE,
    "in_list": OperatorSymbol.IN,
    "not_in_list": OperatorSymbol.NOT_IN,
    "not_equal": OperatorSymbol.NEQ,
    "equal": OperatorSymbol.EQ,
    # Short forms
    "eq": OperatorSymbol.EQ,
    "neq": OperatorSymbol.NEQ,
    "ne": OperatorSymbol.NEQ,
    "gt": OperatorSymbol.GT,
    "lt": OperatorSymbol.LT,
    "gte": OperatorSymbol.GTE,
    "lte": OperatorSymbol.LTE,
}

OPERATOR_LABELS: Dict[OperatorSymbol, str] = {
    OperatorSymbol.EQ: "Equals",
    OperatorSymbol.NEQ: "Not Equals",
    OperatorSymbol.GT: "Greater Than",
    OperatorSymbol.LT: "Less Than",
    OperatorSymbol.GTE: "Greater Than or Equal",
    OperatorSymbol.LTE: "Less Than or Equal",
    OperatorSymbol.IN: "In",
    OperatorSymbol.NOT_IN: "Not In",
    OperatorSymbol.LIKE: "Contains",
    OperatorSymbol.NOT_LIKE: "Does Not Contain",
}


def try_normalize_operator(raw: Any) -> Optional[OperatorSymbol]:
    """Map any known operator spelling to its canonical symbol, or None."""
    if isinstance(raw, OperatorSymbol):
        return raw
    if not isinstance(raw, str):
        return None
    key = raw.strip()
    if key in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[key]
    key = "_".join(key.lower().replace("-", " ").split())
    return OPERATOR_ALIASES.get(key)


def normalize_operator(raw: Any) -> OperatorSymbol:
    symbol = try_normalize_operator(raw)
    if symbol is None:
        raise ValueError(f"Unknown operator: {raw!r}")
    return symbol


# ============================================
# Value types
# ============================================


class ValueType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"


CATALOG_FIELD_TYPES: Dict[str, ValueType] = {
    "numeric": ValueType.NUMBER,
    "number": ValueType.NUMBER,
    "integer": ValueType.NUMBER,
    "int": ValueType.NUMBER,
    "bigint": ValueType.NUMBER,
    "decimal": ValueType.NUMBER,
    "float": ValueType.NUMBER,
    "double": ValueType.NUMBER,
    "boolean": ValueType.BOOLEAN,
    "bool": ValueType.BOOLEAN,
    "array": ValueType.ARRAY,
    "list": ValueType.ARRAY,
}


def value_type_for(field_type: Optional[str]) -> ValueType:
    """Catalog field types outside the table (text, date, timestamp...) are strings."""
    if not field_type:
        return ValueType.STRING
    return CATALOG_FIELD_TYPES.get(field_type.strip().lower(), ValueType.STRING)


def infer_value_type(value: Any) -> ValueType:
    if isinstance(value, (list, tuple)):
        return ValueType.ARRAY
    if isinstance(value, bool):
        return ValueType.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueType.NUMBER
    return ValueType.STRING


def is_number_like(value: Any) -> bool:
    """Numbers and numeric strings; booleans and NaN/inf are rejected."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, str):
        try:
            return math.isfinite(float(value.strip()))
        except ValueError:
            return False
    return False


def is_boolean_like(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return isinstance(value, str) and value.strip().lower() in ("true", "false")


# ============================================
# Logical operators and kinds
# ============================================


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class GroupJoin(str, Enum):
    """
    How a group combines with the group that follows it.

    UNSPECIFIED marks a join that was lost in flat storage; it evaluates as AND.
    """

    AND = "AND"
    OR = "OR"
    UNSPECIFIED = "UNSPECIFIED"


class ConditionKind(str, Enum):
    PROFILE_ATTRIBUTE = "profile_attribute"
    SEGMENT_REFERENCE = "segment_reference"
    LIST_REFERENCE = "list_reference"


class GroupType(str, Enum):
    RULE = "rule"
    SEGMENTS = "segments"
    LIST = "list"


GROUP_TYPE_FOR_KIND: Dict[ConditionKind, GroupType] = {
    ConditionKind.PROFILE_ATTRIBUTE: GroupType.RULE,
    ConditionKind.SEGMENT_REFERENCE: GroupType.SEGMENTS,
    ConditionKind.LIST_REFERENCE: GroupType.LIST,
}

KIND_FOR_GROUP_TYPE: Dict[GroupType, ConditionKind] = {v: k for k, v in GROUP_TYPE_FOR_KIND.items()}

SEGMENT_KEY_PREFIX = "segment:"
QUICKLIST_KEY_PREFIX = "quicklist:"


# ============================================
# Field catalog
# ============================================


class OperatorDescriptor(BaseModel):
    """Operator as described by the catalog, normalized to a canonical symbol."""

    id: Optional[Union[int, str]] = None
    symbol: OperatorSymbol
    label: str = ""
    requires_value: bool = True
    requires_two_values: bool = False

    @field_validator("symbol", mode="before")
    @classmethod
    def _normalize_symbol(cls, v: Any) -> OperatorSymbol:
        return normalize_operator(v)


class UiHints(BaseModel):
    """Rendering hints. Advisory only; never used to reject a value."""

    distinct_values: Optional[List[Any]] = None
    range_min: Optional[float] = None
    range_max: Optional[float] = None
    is_multi_select: bool = False
    component_type: Optional[str] = None


class FieldDescriptor(BaseModel):
    """One filterable attribute from the catalog."""

    id: Optional[Union[int, str]] = None
    field_value: str = Field(..., min_length=1)
    display_name: str = ""
    value_type: ValueType = ValueType.STRING
    allowed_operators: List[OperatorDescriptor] = Field(..., min_length=1)
    ui_hints: UiHints = Field(default_factory=UiHints)
    default_operator_id: Optional[Union[int, str]] = None
    description: str = ""
    source_table: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def allowed_symbols(self) -> List[OperatorSymbol]:
        return [op.symbol for op in self.allowed_operators]

    def allows(self, symbol: OperatorSymbol) -> bool:
        return symbol in self.allowed_symbols

    @property
    def default_operator(self) -> OperatorDescriptor:
        for op in self.allowed_operators:
            if self.default_operator_id is not None and op.id == self.default_operator_id:
                return op
        return self.allowed_operators[0]


class Category(BaseModel):
    id: Optional[Union[int, str]] = None
    name: str
    value: Optional[str] = None
    description: str = ""
    parent_category_id: Optional[Union[int, str]] = None
    display_order: int = 0
    fields: List[FieldDescriptor] = Field(default_factory=list)


# ============================================
# Conditions
# ============================================


def new_client_id() -> str:
    """Client-local id; only used by the editor to diff rows."""
    return uuid.uuid4().hex[:9]


class _ConditionBase(BaseModel):
    id: str = Field(default_factory=new_client_id)
    operator_symbol: OperatorSymbol = Field(
        OperatorSymbol.EQ, validation_alias=AliasChoices("operator_symbol", "operator")
    )
    # Raw operator of a stored rule that no canonical symbol matches
    unresolved_operator: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("operator_symbol", mode="before")
    @classmethod
    def _normalize_operator(cls, v: Any) -> OperatorSymbol:
        return normalize_operator(v)

    @property
    def kind(self) -> ConditionKind:
        return ConditionKind(self.condition_kind)


class ProfileAttributeCondition(_ConditionBase):
    """Predicate on a catalog field."""

    condition_kind: Literal["profile_attribute"] = "profile_attribute"
    field_value: str = Field(..., validation_alias=AliasChoices("field_value", "field"))
    value: Any = None
    unresolved_field: bool = False

    @classmethod
    def blank(cls, field: Optional[FieldDescriptor] = None, id: Optional[str] = None) -> "ProfileAttributeCondition":
        operator = field.default_operator.symbol if field else OperatorSymbol.EQ
        value: Any = [] if operator in LIST_OPERATORS else ""
        return cls(
            id=id or new_client_id(),
            field_value=field.field_value if field else "",
            operator_symbol=operator,
            value=value,
        )


class SegmentReferenceCondition(_ConditionBase):
    """Membership in another segment."""

    condition_kind: Literal["segment_reference"] = "segment_reference"
    operator_symbol: OperatorSymbol = Field(
        OperatorSymbol.IN, validation_alias=AliasChoices("operator_symbol", "operator")
    )
    referenced_segment_id: Optional[Union[int, str]] = None

    @classmethod
    def blank(cls, id: Optional[str] = None) -> "SegmentReferenceCondition":
        return cls(id=id or new_client_id())


class ListReferenceCondition(_ConditionBase):
    """Membership in an uploaded QuickList."""

    condition_kind: Literal["list_reference"] = "list_reference"
    operator_symbol: OperatorSymbol = Field(
        OperatorSymbol.IN, validation_alias=AliasChoices("operator_symbol", "operator")
    )
    referenced_list_id: Optional[Union[int, str]] = None

    @classmethod
    def blank(cls, id: Optional[str] = None) -> "ListReferenceCondition":
        return cls(id=id or new_client_id())


Condition = Annotated[
    Union[ProfileAttributeCondition, SegmentReferenceCondition, ListReferenceCondition],
    Field(discriminator="condition_kind"),
]


def reset_condition(
    condition: Any, kind: ConditionKind, field: Optional[FieldDescriptor] = None
) -> Union[ProfileAttributeCondition, SegmentReferenceCondition, ListReferenceCondition]:
    """
    Switch a condition to another kind.

    Returns a fresh condition of ``kind`` that keeps only the client id;
    nothing from the previous variant leaks into the new one.
    """
    kind = ConditionKind(kind)
    if kind == ConditionKind.PROFILE_ATTRIBUTE:
        return ProfileAttributeCondition.blank(field, id=condition.id)
    if kind == ConditionKind.SEGMENT_REFERENCE:
        return SegmentReferenceCondition.blank(id=condition.id)
    return ListReferenceCondition.blank(id=condition.id)


def reference_key(condition: Any) -> str:
    """Persisted key of a condition: the field value, or a prefixed reference id."""
    if condition.condition_kind == ConditionKind.SEGMENT_REFERENCE:
        return f"{SEGMENT_KEY_PREFIX}{condition.referenced_segment_id}"
    if condition.condition_kind == ConditionKind.LIST_REFERENCE:
        return f"{QUICKLIST_KEY_PREFIX}{condition.referenced_list_id}"
    return condition.field_value


def condition_value(condition: Any) -> Any:
    if condition.condition_kind == ConditionKind.SEGMENT_REFERENCE:
        return condition.referenced_segment_id
    if condition.condition_kind == ConditionKind.LIST_REFERENCE:
        return condition.referenced_list_id
    return condition.value


# ============================================
# Groups and tree
# ============================================


class ConditionGroup(BaseModel):
    """
    Conditions combined with one intra-group operator.

    ``inter_group_operator_to_next`` trails the group: it joins this group to
    the following one and is None only on the last group.
    """

    id: str = Field(default_factory=new_client_id)
    group_type: GroupType = Field(
        GroupType.RULE, validation_alias=AliasChoices("group_type", "conditionType", "condition_type")
    )
    intra_group_operator: LogicalOperator = Field(
        LogicalOperator.AND, validation_alias=AliasChoices("intra_group_operator", "operator")
    )
    conditions: List[Condition] = Field(default_factory=list)
    inter_group_operator_to_next: Optional[GroupJoin] = None

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _default_condition_kinds(cls, data: Any) -> Any:
        """Legacy editor rows carry no kind; derive it from the group type."""
        if not isinstance(data, dict):
            return data
        raw_type = data.get("group_type") or data.get("conditionType") or data.get("condition_type") or GroupType.RULE
        try:
            kind = KIND_FOR_GROUP_TYPE[GroupType(raw_type)]
        except ValueError:
            return data
        conditions = data.get("conditions")
        if isinstance(conditions, list):
            data = dict(data)
            data["conditions"] = [
                {**c, "condition_kind": kind.value} if isinstance(c, dict) and "condition_kind" not in c else c
                for c in conditions
            ]
        return data

    @field_validator("intra_group_operator", "inter_group_operator_to_next", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


class CriteriaTree(BaseModel):
    """Ordered condition groups; evaluation order is list order."""

    groups: List[ConditionGroup] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.groups

    @property
    def condition_count(self) -> int:
        return sum(len(g.conditions) for g in self.groups)

    def iter_conditions(self) -> Iterator[Tuple[int, ConditionGroup, Any]]:
        for index, group in enumerate(self.groups):
            for condition in group.conditions:
                yield index, group, condition

    def resolved_join(self, index: int) -> Optional[LogicalOperator]:
        """Join between group ``index`` and the next one; UNSPECIFIED and missing joins evaluate as AND."""
        if index >= len(self.groups) - 1:
            return None
        join = self.groups[index].inter_group_operator_to_next
        if join == GroupJoin.OR:
            return LogicalOperator.OR
        return LogicalOperator.AND

    def unresolved_conditions(self) -> List[Any]:
        """Conditions rebuilt from stored rules with an unknown field or operator."""
        return [
            c for _, _, c in self.iter_conditions()
            if c.unresolved_operator is not None
            or (c.condition_kind == ConditionKind.PROFILE_ATTRIBUTE and c.unresolved_field)
        ]


# ============================================
# Flat persisted form
# ============================================


class RuleRecord(BaseModel):
    """
    One persisted rule per condition.

    ``operator_symbol`` is None only on records read back from the store
    whose operator matches no canonical symbol; ``raw_operator`` then holds
    what the store sent.
    """

    field_or_reference_key: str
    operator_symbol: Optional[OperatorSymbol]
    raw_operator: Optional[str] = None
    value: Any = None
    value_type: ValueType = ValueType.STRING
    group_operator: LogicalOperator = LogicalOperator.AND
    order: int
    group_index: Optional[int] = None
    inter_group_operator: Optional[GroupJoin] = None
    rule_id: Optional[Union[int, str]] = None

    @field_validator("operator_symbol", mode="before")
    @classmethod
    def _normalize_operator(cls, v: Any) -> Optional[OperatorSymbol]:
        if v is None:
            return None
        return normalize_operator(v)

    @field_validator("group_operator", "inter_group_operator", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _operator_present(self) -> "RuleRecord":
        if self.operator_symbol is None and not self.raw_operator:
            raise ValueError("rule requires an operator")
        return self

    def to_payload(self) -> Dict[str, Any]:
        """Wire body for the rule persistence API."""
        rule_json: Dict[str, Any] = {
            "field": self.field_or_reference_key,
            "operator": self.operator_symbol.value if self.operator_symbol else self.raw_operator,
            "value": self.value,
            "type": self.value_type.value,
            "group_operator": self.group_operator.value,
        }
        if self.group_index is not None:
            rule_json["group_index"] = self.group_index
            rule_json["join_next"] = self.inter_group_operator.value if self.inter_group_operator else None
        return {"rule_json": rule_json, "rule_order": self.order}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RuleRecord":
        """
        Parse a rule as returned by the store: ``{id, rule_json, rule_order}``.

        ``rule_json`` may arrive as a JSON string. Foreign ``type`` values
        map like catalog field types and unknown operators are kept raw, so
        one odd rule never costs the rest of the set. Raises ValueError on
        anything that cannot be read as a rule.
        """
        rule_json = payload.get("rule_json")
        if isinstance(rule_json, str):
            rule_json = json.loads(rule_json)
        if not isinstance(rule_json, dict):
            raise ValueError("rule_json must be an object")
        if "field" not in rule_json or rule_json.get("operator") in (None, ""):
            raise ValueError("rule_json requires 'field' and 'operator'")

        value = rule_json.get("value")
        raw_type = rule_json.get("type")
        if isinstance(raw_type, str) and raw_type.strip():
            value_type = value_type_for(raw_type)
        else:
            value_type = infer_value_type(value)

        raw_operator = rule_json["operator"]
        return cls(
            field_or_reference_key=str(rule_json["field"]),
            operator_symbol=try_normalize_operator(raw_operator),
            raw_operator=str(raw_operator),
            value=value,
            value_type=value_type,
            group_operator=rule_json.get("group_operator") or LogicalOperator.AND,
            order=payload.get("rule_order", payload.get("order")),
            group_index=rule_json.get("group_index"),
            inter_group_operator=rule_json.get("join_next"),
            rule_id=payload.get("id"),
        )



# ============================================
# Validation
# ============================================


class ValidationErrorCode(str, Enum):
    EMPTY_GROUP = "EmptyGroup"
    UNKNOWN_FIELD = "UnknownField"
    OPERATOR_NOT_ALLOWED = "OperatorNotAllowedForField"
    TYPE_MISMATCH = "TypeMismatch"
    EXPECTED_ARRAY_VALUE = "ExpectedArrayValue"
    MISSING_REFERENCE = "MissingReference"
    SELF_REFERENTIAL_SEGMENT = "SelfReferentialSegment"
    CONDITION_KIND_MISMATCH = "ConditionKindMismatch"
    MISSING_GROUP_JOIN = "MissingGroupJoin"
    EMPTY_CRITERIA = "EmptyCriteria"


class CriteriaError(BaseModel):
    """A single user-correctable problem in a criteria tree."""

    code: ValidationErrorCode
    message: str
    group_id: Optional[str] = None
    group_index: Optional[int] = None
    condition_id: Optional[str] = None
    field: Optional[str] = None

    def __str__(self) -> str:
        return self.message


class ValidationResult(BaseModel):
    valid: bool
    errors: List[CriteriaError] = Field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: List[CriteriaError]) -> "ValidationResult":
        return cls(valid=not errors, errors=errors)

    @property
    def messages(self) -> List[str]:
        return [e.message for e in self.errors]

    def codes(self) -> List[ValidationErrorCode]:
        return [e.code for e in self.errors]


# ============================================
# Preview
# ============================================


class PreviewCondition(BaseModel):
    field: str
    operator: str
    value: Any = None


class PreviewResult(BaseModel):
    estimated_count: int = 0
    conditions_sent: int = 0


# ============================================
# API payloads
# ============================================


class CatalogResponse(BaseModel):
    categories: List[Category]
    source: str
    degraded: bool = False
    loaded_at: Optional[str] = None


class CriteriaRequest(BaseModel):
    """Tree submitted from the editor, with the id of the segment being edited."""

    tree: CriteriaTree = Field(default_factory=CriteriaTree)
    segment_id: Optional[Union[int, str]] = None


class CompileResponse(BaseModel):
    rules: List[RuleRecord]
    payloads: List[Dict[str, Any]]


class DecompileRequest(BaseModel):
    rules: List[Dict[str, Any]] = Field(default_factory=list, description="Rules in store shape {id, rule_json, rule_order}")
    strict: bool = False


class DecompileResponse(BaseModel):
    tree: CriteriaTree
    unresolved_condition_ids: List[str] = Field(default_factory=list)
    degraded_catalog: bool = False


class PreviewResponse(BaseModel):
    estimated_count: int


class SaveCriteriaRequest(BaseModel):
    tree: CriteriaTree


class SaveCriteriaResponse(BaseModel):
    segment_id: Union[int, str]
    rule_count: int
    group_boundaries_persisted: bool = False


class ReferenceResponse(BaseModel):
    kind: Literal["segment", "quicklist"]
    id: Union[int, str]
    name: str
