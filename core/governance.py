"""Reqbench Plugin Bridge — Governance Gate

Every tool carries a SafetyLevel; the active PolicyMode sets a ceiling.
Tools above the ceiling are refused before they run.
"""

from __future__ import annotations
import logging

from models.models import ActionType, GovernanceDecision, PolicyMode, Tool

logger = logging.getLogger("reqbench.governance")


class GovernanceGate:
    def __init__(self, policy_mode: PolicyMode):
        self._policy_mode = policy_mode
        logger.info("GovernanceGate initialized: policy=%s", policy_mode.value)

    @property
    def policy_mode(self) -> PolicyMode:
        return self._policy_mode

    def evaluate(self, tool: Tool) -> GovernanceDecision:
        policy = self._policy_mode
        ceiling = policy.max_safety_level

        if tool.safety_level.tier <= ceiling.tier:
            return GovernanceDecision(
                action=ActionType.ALLOW,
                reason=f"Tool safety_level={tool.safety_level.value} within "
                       f"policy={policy.value} ceiling={ceiling.value}",
                policy_mode=policy,
            )
        return GovernanceDecision(
            action=ActionType.DENY,
            reason=f"Tool safety_level={tool.safety_level.value} exceeds "
                   f"policy={policy.value} ceiling={ceiling.value}",
            policy_mode=policy,
        )
