"""
Flow Compiler — turns raw flow definitions into indexed, immutable graphs.

Two raw shapes are accepted:

  - Nested documents (YAML files, REST payloads): a flow dict with a
    `nodes` list, each node carrying its `options` / `actions` / `fields`
    inline.
  - Table rows (the chatbot_flows / chatbot_nodes / chatbot_options /
    chatbot_node_actions tables): one dict per row, joined here by id.

Both end up as a FlowGraph: node id → node with options and actions
inlined, validated so that every reference points at a node that exists.
A FlowGraph is never mutated after compilation; refreshing a flow means
compiling a new one.
"""
from __future__ import annotations

import re
import structlog
from collections import defaultdict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import TypeAdapter, ValidationError

from engine.errors import FlowValidationError
from models.schemas import (
    ConditionNode, Flow, FormNode, MenuNode, Node, NodeBase, NodeType, PromptNode,
)

logger = structlog.get_logger()

_node_adapter = TypeAdapter(Node)

# Node type names used by the original chatbot_nodes enum
_LEGACY_TYPES = {"question"}


@dataclass(frozen=True)
class FlowGraph:
    """Compiled, read-only snapshot of one flow."""
    flow: Flow
    nodes: Mapping[str, NodeBase]
    root_node_id: str
    children: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.flow.id

    @property
    def root(self) -> NodeBase:
        return self.nodes[self.root_node_id]

    def get(self, node_id: str) -> Optional[NodeBase]:
        return self.nodes.get(node_id)

    def node(self, node_id: str) -> NodeBase:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise KeyError(f"node '{node_id}' not in flow '{self.flow.id}'") from None

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes


# ──────────────────────────────────────────────────────────────
#  Entry points
# ──────────────────────────────────────────────────────────────

def compile_flow(raw: dict[str, Any]) -> FlowGraph:
    """Compile a nested flow document."""
    flow_id = str(raw.get("id", ""))
    flow = parse_flow(raw)
    nodes: list[NodeBase] = []
    errors: list[str] = []
    for raw_node in raw.get("nodes", []):
        try:
            nodes.append(_parse_node(raw_node, flow_id))
        except ValidationError as e:
            errors.append(f"node '{raw_node.get('id', '?')}': {e.errors()[0]['msg']}")
    if errors:
        raise FlowValidationError(flow_id, errors)
    return build_graph(flow, nodes)


def compile_rows(
    flow_row: dict[str, Any],
    node_rows: list[dict[str, Any]],
    option_rows: list[dict[str, Any]] = (),
    action_rows: list[dict[str, Any]] = (),
) -> FlowGraph:
    """Compile a flow from its table rows."""
    options_by_node: dict[str, list[dict]] = defaultdict(list)
    for row in option_rows:
        options_by_node[str(row["node_id"])].append({
            "text": row.get("option_text", ""),
            "value": str(row.get("option_value", "")),
            "next_node_id": _str_id(row.get("next_node_id")),
            "order_index": row.get("order_index", 0),
            "arguments": row.get("arguments") or {},
        })

    actions_by_node: dict[str, list[dict]] = defaultdict(list)
    for row in action_rows:
        actions_by_node[str(row["node_id"])].append({
            "type": row["action_type"],
            "config": row.get("action_config") or {},
            "execution_order": row.get("execution_order", 0),
            "is_active": row.get("is_active", True),
        })

    nested_nodes = []
    for row in node_rows:
        node_id = str(row["id"])
        config = dict(row.get("config") or {})
        nested_nodes.append({
            **config,
            "id": node_id,
            "type": row.get("node_type", config.get("type", "response")),
            "parent_id": _str_id(row.get("parent_node_id")),
            "content": row.get("content") or "",
            "order_index": row.get("order_index", 0),
            "is_final": row.get("is_final", False),
            "has_actions": row.get("has_actions", False),
            "wait_for_input": row.get("wait_for_input", False),
            "timeout_seconds": row.get("timeout_seconds"),
            "options": options_by_node.get(node_id, []),
            "actions": actions_by_node.get(node_id, []),
        })

    return compile_flow({**flow_row, "nodes": nested_nodes})


# ──────────────────────────────────────────────────────────────
#  Parsing
# ──────────────────────────────────────────────────────────────

def _str_id(value: Any) -> str:
    return "" if value is None else str(value)


def parse_flow(raw: dict[str, Any]) -> Flow:
    data = {
        "id": str(raw.get("id", "")),
        "connection_id": _str_id(raw.get("connection_id", raw.get("id_connection"))),
        "department_id": _str_id(raw.get("department_id", raw.get("id_department"))),
        "name": raw.get("name", ""),
        "is_active": raw.get("is_active", True),
        "trigger_keywords": tuple(raw.get("trigger_keywords") or ()),
        "priority": raw.get("priority", 0),
        "root_node_id": _str_id(raw.get("root_node_id")),
    }
    if raw.get("created_at"):
        data["created_at"] = raw["created_at"]
    return Flow(**data)


def _parse_node(raw: dict[str, Any], flow_id: str) -> NodeBase:
    data = dict(raw)
    data["id"] = str(data["id"])
    data.setdefault("flow_id", flow_id)
    node_type = data.get("type") or data.pop("node_type", NodeType.RESPONSE.value)
    if node_type in _LEGACY_TYPES:
        node_type = NodeType.MENU.value if data.get("options") else NodeType.PROMPT.value
    data["type"] = node_type
    data.pop("node_type", None)

    if "has_actions" not in data:
        data["has_actions"] = bool(data.get("actions"))
    if node_type != NodeType.MENU.value:
        data.pop("options", None)
        data.pop("dynamic_options", None)
    if data.get("timeout_seconds") is None:
        data.pop("timeout_seconds", None)
    for key in ("next", "timeout_next", "default_next", "parent_id"):
        if key in data:
            data[key] = _str_id(data[key])
    return _node_adapter.validate_python(data)


# ──────────────────────────────────────────────────────────────
#  Graph assembly + validation
# ──────────────────────────────────────────────────────────────

def build_graph(flow: Flow, nodes: list[NodeBase]) -> FlowGraph:
    errors = validate(flow, nodes)
    if errors:
        logger.error("invalid_flow_definition", flow_id=flow.id, errors=errors)
        raise FlowValidationError(flow.id, errors)

    index = {n.id: n for n in nodes}
    root_id = flow.root_node_id or _default_root(nodes)

    children: dict[str, list[NodeBase]] = defaultdict(list)
    for n in nodes:
        if n.parent_id:
            children[n.parent_id].append(n)
    child_index = {
        parent: tuple(c.id for c in sorted(kids, key=lambda c: c.order_index))
        for parent, kids in children.items()
    }

    for n in nodes:
        if n.timeout_seconds and not n.wait_for_input:
            logger.warning("timeout_ignored_without_wait_for_input",
                           flow_id=flow.id, node_id=n.id)

    logger.debug("flow_compiled", flow_id=flow.id, nodes=len(nodes), root=root_id)
    return FlowGraph(
        flow=flow,
        nodes=MappingProxyType(index),
        root_node_id=root_id,
        children=MappingProxyType(child_index),
    )


def _default_root(nodes: list[NodeBase]) -> str:
    roots = [n for n in nodes if not n.parent_id] or nodes
    return min(roots, key=lambda n: n.order_index).id


def validate(flow: Flow, nodes: list[NodeBase]) -> list[str]:
    errors: list[str] = []
    if not flow.id:
        errors.append("flow id is required")
    if not flow.connection_id:
        errors.append("connection_id is required")
    if not nodes:
        errors.append("flow must have at least one node")
        return errors

    ids = [n.id for n in nodes]
    node_ids = set(ids)
    if len(ids) != len(node_ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        errors.append(f"duplicate node ids: {dupes}")

    if flow.root_node_id and flow.root_node_id not in node_ids:
        errors.append(f"root_node_id '{flow.root_node_id}' not found in nodes")

    def check_ref(node: NodeBase, attr: str, target: str):
        if target and target not in node_ids:
            errors.append(f"node '{node.id}' references unknown {attr} '{target}'")

    def check_pattern(where: str, pattern: str):
        try:
            re.compile(pattern)
        except re.error as e:
            errors.append(f"{where} has an invalid pattern {pattern!r}: {e}")

    for node in nodes:
        check_ref(node, "next", node.next)
        check_ref(node, "timeout_next", node.timeout_next)
        check_ref(node, "parent_id", node.parent_id)

        if isinstance(node, MenuNode):
            if not node.options and not node.dynamic_options:
                errors.append(f"menu '{node.id}' has no options")
            values = [o.value for o in node.options]
            if len(values) != len(set(values)):
                errors.append(f"menu '{node.id}' has duplicate option values")
            for opt in node.options:
                if not opt.next_node_id:
                    errors.append(f"option '{opt.value}' in '{node.id}' has no next_node_id")
                check_ref(node, "option target", opt.next_node_id)

        elif isinstance(node, FormNode):
            if not node.fields:
                errors.append(f"form '{node.id}' has no fields")
            keys = [f.field for f in node.fields]
            if len(keys) != len(set(keys)):
                errors.append(f"form '{node.id}' has duplicate field keys")
            for spec in node.fields:
                if spec.pattern:
                    check_pattern(f"field '{spec.field}' in '{node.id}'", spec.pattern)

        elif isinstance(node, PromptNode):
            if node.pattern:
                check_pattern(f"prompt '{node.id}'", node.pattern)

        elif isinstance(node, ConditionNode):
            if not node.default_next:
                errors.append(f"condition '{node.id}' has no default_next")
            check_ref(node, "default_next", node.default_next)
            for i, branch in enumerate(node.branches):
                if not branch.next:
                    errors.append(f"condition '{node.id}' branch {i} has no next")
                check_ref(node, "branch target", branch.next)
                for cond in branch.conditions:
                    if cond.operator == "regex":
                        check_pattern(f"condition '{node.id}' branch {i}", str(cond.value))

        if node.has_actions and not node.actions:
            errors.append(f"node '{node.id}' has_actions but declares no actions")

    return errors
