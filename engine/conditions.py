"""
Condition Evaluator — resolves the successor of a condition node.

Branches are tried in declaration order; the first whose conditions all
hold wins, otherwise `default_next` is taken. The compiler refuses
condition nodes without a default, so resolution always yields a node.
"""
from __future__ import annotations

import structlog
from typing import Any

from models.schemas import ConditionNode, Session
from utils.conditions import evaluate_conditions

logger = structlog.get_logger()


class ConditionEvaluator:

    @staticmethod
    def evaluation_data(session: Session) -> dict[str, Any]:
        return {
            **session.variables,
            **session.field_values,
            "fields": dict(session.field_values),
            "stage": session.stage,
            "flow_id": session.flow_id,
            "contact_id": session.contact_id,
        }

    def resolve(self, node: ConditionNode, session: Session) -> str:
        data = self.evaluation_data(session)
        for i, branch in enumerate(node.branches):
            if evaluate_conditions(branch.conditions, data):
                logger.debug("condition_branch_taken",
                             session_id=session.id, node_id=node.id,
                             branch=i, next=branch.next)
                return branch.next
        logger.debug("condition_default_taken",
                     session_id=session.id, node_id=node.id, next=node.default_next)
        return node.default_next
