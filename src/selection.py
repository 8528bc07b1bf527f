#!/usr/bin/env python3
# src/selection.py
"""
Label and field selection primitives.

This module provides:
- Structured validation errors with Kubernetes-style field paths
- Label requirements (In, NotIn, Exists, DoesNotExist, Gt, Lt) and conjunctive label selectors
- Field requirements (equality / inequality) and conjunctive field selectors
- Aggregation of validation errors for reporting
"""

import json
import re
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

# Qualified names and label values share the same character rules
QUALIFIED_NAME_MAX_LENGTH = 63
LABEL_VALUE_MAX_LENGTH = 63
DNS1123_SUBDOMAIN_MAX_LENGTH = 253

_QUALIFIED_NAME_RE = re.compile(r"([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]")
_LABEL_VALUE_RE = re.compile(r"(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?")
_DNS1123_SUBDOMAIN_RE = re.compile(
    r"[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*"
)
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class NodeSelectorOperator(str, Enum):
    """Operators accepted in node selector requirements."""

    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"
    GT = "Gt"
    LT = "Lt"


LABEL_OPERATORS = [op.value for op in NodeSelectorOperator]
FIELD_OPERATORS = [NodeSelectorOperator.IN.value, NodeSelectorOperator.NOT_IN.value]


class FieldPath:
    """Dotted/indexed path to an element of a declarative object."""

    def __init__(self, *parts: str):
        self._parts: Tuple[str, ...] = tuple(parts)

    def child(self, name: str) -> "FieldPath":
        return FieldPath(*self._parts, name)

    def index(self, i: int) -> "FieldPath":
        if not self._parts:
            return FieldPath(f"[{i}]")
        return FieldPath(*self._parts[:-1], f"{self._parts[-1]}[{i}]")

    def __str__(self) -> str:
        return ".".join(self._parts)

    def __repr__(self) -> str:
        return f"FieldPath({str(self)!r})"


class FieldError(Exception):
    """A validation error bound to a field path."""

    INVALID = "Invalid value"
    NOT_SUPPORTED = "Unsupported value"

    def __init__(self, error_type: str, path: Optional[FieldPath], bad_value, detail: str = ""):
        self.error_type = error_type
        self.field = str(path) if path is not None else ""
        self.bad_value = bad_value
        self.detail = detail
        super().__init__(self.error_body())

    @classmethod
    def invalid(cls, path: Optional[FieldPath], value, detail: str) -> "FieldError":
        return cls(cls.INVALID, path, value, detail)

    @classmethod
    def not_supported(
        cls, path: Optional[FieldPath], value, valid_values: Sequence[str]
    ) -> "FieldError":
        quoted = ", ".join(json.dumps(v) for v in valid_values)
        return cls(cls.NOT_SUPPORTED, path, value, f"supported values: {quoted}")

    def error_body(self) -> str:
        body = f"{self.error_type}: {json.dumps(self.bad_value, separators=(',', ':'))}"
        if self.detail:
            body = f"{body}: {self.detail}"
        return body

    def __str__(self) -> str:
        if self.field:
            return f"{self.field}: {self.error_body()}"
        return self.error_body()


class SelectorError(Exception):
    """Aggregate of the distinct errors collected while evaluating a selector."""

    def __init__(self, errors: Sequence[Exception]):
        self.errors: List[Exception] = list(errors)
        super().__init__(str(self))

    def __str__(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        return "[" + ", ".join(str(e) for e in self.errors) + "]"


def aggregate_errors(errors: Iterable[Exception]) -> Optional[SelectorError]:
    """Flatten and deduplicate errors; return None when there are none."""
    flat: List[Exception] = []
    seen = set()

    def visit(err: Exception):
        if isinstance(err, SelectorError):
            for nested in err.errors:
                visit(nested)
            return
        message = str(err)
        if message in seen:
            return
        seen.add(message)
        flat.append(err)

    for err in errors:
        visit(err)

    if not flat:
        return None
    return SelectorError(flat)


# -----------------------------
# Validation helpers
# -----------------------------


def validate_qualified_name(value: str) -> List[str]:
    """Return the reasons why value is not a valid qualified name (label key)."""
    errs = []
    parts = value.split("/")
    if len(parts) == 1:
        name = parts[0]
    elif len(parts) == 2:
        prefix, name = parts
        if not prefix:
            errs.append("prefix part must be non-empty")
        elif len(prefix) > DNS1123_SUBDOMAIN_MAX_LENGTH:
            errs.append(
                f"prefix part must be no more than {DNS1123_SUBDOMAIN_MAX_LENGTH} characters"
            )
        elif not _DNS1123_SUBDOMAIN_RE.fullmatch(prefix):
            errs.append(
                "prefix part a lowercase RFC 1123 subdomain must consist of lower case "
                "alphanumeric characters, '-' or '.', and must start and end with an "
                "alphanumeric character"
            )
    else:
        return [
            "a qualified name must consist of alphanumeric characters, '-', '_' or '.', "
            "and must start and end with an alphanumeric character with an optional "
            "DNS subdomain prefix and '/'"
        ]

    if not name:
        errs.append("name part must be non-empty")
    elif len(name) > QUALIFIED_NAME_MAX_LENGTH:
        errs.append(f"name part must be no more than {QUALIFIED_NAME_MAX_LENGTH} characters")
    elif not _QUALIFIED_NAME_RE.fullmatch(name):
        errs.append(
            "name part must consist of alphanumeric characters, '-', '_' or '.', "
            "and must start and end with an alphanumeric character"
        )
    return errs


def validate_label_value(value: str) -> List[str]:
    errs = []
    if len(value) > LABEL_VALUE_MAX_LENGTH:
        errs.append(f"must be no more than {LABEL_VALUE_MAX_LENGTH} characters")
    if not _LABEL_VALUE_RE.fullmatch(value):
        errs.append(
            "a valid label must be an empty string or consist of alphanumeric characters, "
            "'-', '_' or '.', and must start and end with an alphanumeric character"
        )
    return errs


def parse_int64(value: str) -> Optional[int]:
    """Parse a base-10 signed 64-bit integer, returning None when not representable."""
    if not isinstance(value, str) or not _INTEGER_RE.fullmatch(value):
        return None
    parsed = int(value)
    if parsed < INT64_MIN or parsed > INT64_MAX:
        return None
    return parsed


# -----------------------------
# Label selection
# -----------------------------


class LabelRequirement:
    """A single validated (key, operator, values) constraint over a label set."""

    def __init__(self, key: str, operator: NodeSelectorOperator, values: Sequence[str]):
        self.key = key
        self.operator = operator
        self.values: Tuple[str, ...] = tuple(values)

    @classmethod
    def new(
        cls,
        key: str,
        operator: NodeSelectorOperator,
        values: Sequence[str],
        path: Optional[FieldPath] = None,
    ) -> "LabelRequirement":
        """Build a requirement, raising FieldError when it is malformed."""
        values = list(values or [])
        key_path = path.child("key") if path else None
        values_path = path.child("values") if path else None

        reasons = validate_qualified_name(key)
        if reasons:
            raise FieldError.invalid(key_path, key, "; ".join(reasons))

        if operator in (NodeSelectorOperator.IN, NodeSelectorOperator.NOT_IN):
            if not values:
                raise FieldError.invalid(
                    values_path, values, "for 'in', 'notin' operators, values set can't be empty"
                )
        elif operator in (NodeSelectorOperator.EXISTS, NodeSelectorOperator.DOES_NOT_EXIST):
            if values:
                raise FieldError.invalid(
                    values_path, values, "values set must be empty for exists and does not exist"
                )
        elif operator in (NodeSelectorOperator.GT, NodeSelectorOperator.LT):
            if len(values) != 1:
                raise FieldError.invalid(
                    values_path, values, "for 'Gt', 'Lt' operators, exactly one value is required"
                )
            for i, value in enumerate(values):
                if parse_int64(value) is None:
                    raise FieldError.invalid(
                        values_path.index(i) if values_path else None,
                        value,
                        "for 'Gt', 'Lt' operators, the value must be an integer",
                    )
        else:
            raise FieldError.not_supported(
                path.child("operator") if path else None, str(operator), LABEL_OPERATORS
            )

        for i, value in enumerate(values):
            reasons = validate_label_value(value)
            if reasons:
                raise FieldError.invalid(
                    values_path.index(i) if values_path else None, value, "; ".join(reasons)
                )

        return cls(key, operator, values)

    def matches(self, labels: Dict[str, str]) -> bool:
        op = self.operator
        if op == NodeSelectorOperator.IN:
            return self.key in labels and labels[self.key] in self.values
        if op == NodeSelectorOperator.NOT_IN:
            return self.key not in labels or labels[self.key] not in self.values
        if op == NodeSelectorOperator.EXISTS:
            return self.key in labels
        if op == NodeSelectorOperator.DOES_NOT_EXIST:
            return self.key not in labels
        if op in (NodeSelectorOperator.GT, NodeSelectorOperator.LT):
            if self.key not in labels:
                return False
            observed = parse_int64(labels[self.key])
            if observed is None:
                return False
            bound = parse_int64(self.values[0])
            if op == NodeSelectorOperator.GT:
                return observed > bound
            return observed < bound
        return False

    def __str__(self) -> str:
        op = self.operator
        if op == NodeSelectorOperator.EXISTS:
            return self.key
        if op == NodeSelectorOperator.DOES_NOT_EXIST:
            return f"!{self.key}"
        if op == NodeSelectorOperator.GT:
            return f"{self.key}>{self.values[0]}"
        if op == NodeSelectorOperator.LT:
            return f"{self.key}<{self.values[0]}"
        keyword = "in" if op == NodeSelectorOperator.IN else "notin"
        return f"{self.key} {keyword} ({','.join(sorted(self.values))})"

    def __repr__(self) -> str:
        return f"LabelRequirement({str(self)!r})"


class LabelSelector:
    """Conjunction of label requirements; an empty selector matches everything."""

    def __init__(self, requirements: Optional[Sequence[LabelRequirement]] = None):
        self.requirements: List[LabelRequirement] = list(requirements or [])

    def add(self, *requirements: LabelRequirement) -> "LabelSelector":
        return LabelSelector(self.requirements + list(requirements))

    def matches(self, labels: Dict[str, str]) -> bool:
        return all(r.matches(labels) for r in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(r) for r in self.requirements)

    def __repr__(self) -> str:
        return f"LabelSelector({str(self)!r})"


# -----------------------------
# Field selection
# -----------------------------


class FieldRequirement:
    """Equality (or inequality) constraint on a single exposed field."""

    def __init__(self, key: str, value: str, negate: bool = False):
        self.key = key
        self.value = value
        self.negate = negate

    def matches(self, fields: Dict[str, str]) -> bool:
        equal = fields.get(self.key, "") == self.value
        return not equal if self.negate else equal

    def __str__(self) -> str:
        return f"{self.key}{'!=' if self.negate else '='}{self.value}"

    def __repr__(self) -> str:
        return f"FieldRequirement({str(self)!r})"


class FieldSelector:
    """Conjunction of field requirements; an empty selector matches everything."""

    def __init__(self, requirements: Optional[Sequence[FieldRequirement]] = None):
        self.requirements: List[FieldRequirement] = list(requirements or [])

    @classmethod
    def from_set(cls, fields: Dict[str, str]) -> "FieldSelector":
        return cls([FieldRequirement(k, v) for k, v in sorted(fields.items())])

    def matches(self, fields: Dict[str, str]) -> bool:
        return all(r.matches(fields) for r in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(r) for r in self.requirements)

    def __repr__(self) -> str:
        return f"FieldSelector({str(self)!r})"

