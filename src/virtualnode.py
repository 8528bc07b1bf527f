#!/usr/bin/env python3
# src/virtualnode.py
"""
Matching of virtual nodes against cluster selectors.

A cluster selector is a disjunction of terms; each term is the conjunction of
label requirements (matchExpressions) and field requirements (matchFields).
Parse errors are kept on the term they belong to and only reported when no
term matches, so one broken clause cannot defeat a valid one.
"""

import logging
from typing import Dict, List, Optional, Tuple

from resources import NodeSelector, NodeSelectorRequirement, NodeSelectorTerm, VirtualNode
from selection import (
    FIELD_OPERATORS,
    LABEL_OPERATORS,
    FieldError,
    FieldPath,
    FieldRequirement,
    FieldSelector,
    LabelRequirement,
    LabelSelector,
    NodeSelectorOperator,
    SelectorError,
    aggregate_errors,
)

logger = logging.getLogger("offloading-manager.selector")

NAME_FIELD = "metadata.name"


class SelectorTerm:
    """Compiled form of a single node selector term."""

    def __init__(
        self,
        match_labels: Optional[LabelSelector] = None,
        match_fields: Optional[FieldSelector] = None,
        parse_errors: Optional[List[Exception]] = None,
    ):
        self.match_labels = match_labels
        self.match_fields = match_fields
        self.parse_errors: List[Exception] = parse_errors or []

    @classmethod
    def compile(cls, term: NodeSelectorTerm, path: FieldPath) -> "SelectorTerm":
        compiled = cls()
        if term.match_expressions:
            compiled.match_labels, errs = requirements_as_label_selector(
                term.match_expressions, path.child("matchExpressions")
            )
            compiled.parse_errors.extend(errs)
        if term.match_fields:
            compiled.match_fields, errs = requirements_as_field_selector(
                term.match_fields, path.child("matchFields")
            )
            compiled.parse_errors.extend(errs)
        return compiled

    def match(
        self, node_labels: Dict[str, str], node_fields: Dict[str, str]
    ) -> Tuple[bool, List[Exception]]:
        if self.parse_errors:
            return False, self.parse_errors
        if self.match_labels is not None and not self.match_labels.matches(node_labels):
            return False, []
        # Nothing to contradict when the virtual node exposes no fields
        if (
            self.match_fields is not None
            and node_fields
            and not self.match_fields.matches(node_fields)
        ):
            return False, []
        return True, []

    def __repr__(self) -> str:
        return (
            f"SelectorTerm(labels={self.match_labels!r}, fields={self.match_fields!r}, "
            f"errors={len(self.parse_errors)})"
        )


def requirements_as_label_selector(
    requirements: List[NodeSelectorRequirement], path: FieldPath
) -> Tuple[Optional[LabelSelector], List[Exception]]:
    """Convert matchExpressions into a conjunctive label selector."""
    errs: List[Exception] = []
    selector = LabelSelector()
    for i, expr in enumerate(requirements):
        p = path.index(i)
        try:
            operator = NodeSelectorOperator(expr.operator)
        except ValueError:
            errs.append(
                FieldError.not_supported(p.child("operator"), expr.operator, LABEL_OPERATORS)
            )
            continue
        try:
            requirement = LabelRequirement.new(expr.key, operator, expr.values, path=p)
        except FieldError as e:
            errs.append(e)
        else:
            selector = selector.add(requirement)
    if errs:
        return None, errs
    return selector, []


def requirements_as_field_selector(
    requirements: List[NodeSelectorRequirement], path: FieldPath
) -> Tuple[Optional[FieldSelector], List[Exception]]:
    """Convert matchFields into a conjunctive field selector.

    Only In and NotIn are meaningful on fields, and each must carry exactly
    one value.
    """
    errs: List[Exception] = []
    selected: List[FieldRequirement] = []
    for i, expr in enumerate(requirements):
        p = path.index(i)
        if expr.operator not in FIELD_OPERATORS:
            errs.append(
                FieldError.not_supported(p.child("operator"), expr.operator, FIELD_OPERATORS)
            )
            continue
        if len(expr.values) != 1:
            errs.append(
                FieldError.invalid(p.child("values"), expr.values, "must have one element")
            )
            continue
        negate = expr.operator == NodeSelectorOperator.NOT_IN.value
        selected.append(FieldRequirement(expr.key, expr.values[0], negate=negate))
    if errs:
        return None, errs
    return FieldSelector(selected), []


def extract_virtual_node_fields(virtual_node: VirtualNode) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    if virtual_node.name:
        fields[NAME_FIELD] = virtual_node.name
    return fields


class Selector:
    """Runtime representation of a cluster selector.

    Parse errors are only reported by match() when no term matched.
    """

    def __init__(self, node_selector: NodeSelector, path: Optional[FieldPath] = None):
        path = (path or FieldPath()).child("nodeSelectorTerms")
        # An empty selector selects every virtual node, regardless of the terms list below
        self.select_all = not node_selector.node_selector_terms
        self.terms: List[SelectorTerm] = []
        for i, term in enumerate(node_selector.node_selector_terms):
            # nil or empty term selects no objects
            if term.is_empty():
                continue
            self.terms.append(SelectorTerm.compile(term, path.index(i)))

    def match(self, virtual_node: Optional[VirtualNode]) -> Tuple[bool, Optional[SelectorError]]:
        """Check whether the virtual node labels and fields match the selector terms.

        The empty-selector rule wins over the missing-node rule: a selector without
        terms matches even a None virtual node.
        """
        if self.select_all:
            return True, None
        if virtual_node is None:
            return False, None

        node_labels = virtual_node.labels or {}
        node_fields = extract_virtual_node_fields(virtual_node)

        errs: List[Exception] = []
        for term in self.terms:
            matched, term_errs = term.match(node_labels, node_fields)
            if term_errs:
                errs.extend(term_errs)
                continue
            if matched:
                logger.debug(f"VirtualNode {virtual_node.name} matched")
                return True, None

        logger.debug(f"VirtualNode {virtual_node.name} did not match")
        return False, aggregate_errors(errs)

    def __repr__(self) -> str:
        return f"Selector(select_all={self.select_all}, terms={self.terms!r})"


def new_selector(node_selector: NodeSelector) -> Selector:
    return Selector(node_selector)


def match_selector_terms(
    virtual_node: Optional[VirtualNode], node_selector: NodeSelector
) -> Tuple[bool, Optional[SelectorError]]:
    """Compile the selector and match it against a single virtual node.

    An empty selector always matches; a missing virtual node never does.
    """
    return Selector(node_selector).match(virtual_node)
