"""Per-city workflow configuration.

A WorkflowConfig decides which agents run for a city's issues, in which
order, with which confidence thresholds and escalation rules. Configs are
frozen: installing a new one affects only workflows started afterwards,
because each WorkflowState keeps the snapshot it started with.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.civicflow.agents.base import AgentType
from src.civicflow.agents.models import DEFAULT_DOMAINS
from src.civicflow.errors import InvalidConfigError
from src.civicflow.policy import RetryPolicy
from src.civicflow.similarity import DEFAULT_DUPLICATE_THRESHOLD


logger = logging.getLogger(__name__)


MIN_DOMAIN_COUNT = 15
DEFAULT_CONFIDENCE_THRESHOLD = 0.6

DEFAULT_SEQUENCE = (
    AgentType.CLASSIFIER,
    AgentType.PRIORITY_SCORER,
    AgentType.DUPLICATE_DETECTOR,
)


class EscalationRules(BaseModel):
    """When a workflow notifies the human queue.

    Attributes:
        route_priority_escalations: Notify when a PriorityScore requires
            escalation (severity or urgency >= 4).
        low_confidence_floor: Confidence below which a result escalates
            instead of only being flagged. None disables it.
    """

    model_config = ConfigDict(frozen=True)

    route_priority_escalations: bool = True
    low_confidence_floor: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class WorkflowConfig(BaseModel):
    """Workflow configuration of one city.

    Attributes:
        enabled_agents: Agents the city allows.
        sequence_order: Execution order; a duplicate-free subset of enabled_agents.
        confidence_thresholds: Per-agent thresholds; missing agents use the default.
        escalation_rules: Human-queue routing rules.
        domains: The city's civic domains (at least 15, unique).
        similarity_threshold: Duplicate threshold for this city.
        retry: Backoff schedule for agent execution failures.
    """

    model_config = ConfigDict(frozen=True)

    enabled_agents: List[AgentType] = Field(default_factory=lambda: list(DEFAULT_SEQUENCE))
    sequence_order: List[AgentType] = Field(default_factory=lambda: list(DEFAULT_SEQUENCE))
    confidence_thresholds: Dict[AgentType, float] = Field(default_factory=dict)
    escalation_rules: EscalationRules = Field(default_factory=EscalationRules)
    domains: List[str] = Field(default_factory=lambda: list(DEFAULT_DOMAINS))
    similarity_threshold: float = Field(default=DEFAULT_DUPLICATE_THRESHOLD, ge=0.0, le=1.0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    def threshold_for(self, agent_type: AgentType) -> float:
        return self.confidence_thresholds.get(agent_type, DEFAULT_CONFIDENCE_THRESHOLD)


def validate_workflow_config(config: WorkflowConfig) -> List[str]:
    """Return every invariant violation of ``config`` (empty when valid)."""
    problems = []
    enabled = set(config.enabled_agents)

    if not config.sequence_order:
        problems.append("sequence_order must contain at least one agent")

    for agent_type in config.sequence_order:
        if agent_type not in enabled:
            problems.append(
                f"sequence_order contains '{agent_type.value}' which is not enabled"
            )

    if len(set(config.sequence_order)) != len(config.sequence_order):
        problems.append("sequence_order must not repeat an agent")

    if len(set(config.enabled_agents)) != len(config.enabled_agents):
        problems.append("enabled_agents must not repeat an agent")

    for agent_type, threshold in config.confidence_thresholds.items():
        if agent_type not in enabled:
            problems.append(
                f"confidence threshold set for '{agent_type.value}' which is not enabled"
            )
        if not 0.0 <= threshold <= 1.0:
            problems.append(
                f"confidence threshold for '{agent_type.value}' must be in [0, 1]"
            )

    domains = [d.strip() for d in config.domains]
    if any(not d for d in domains):
        problems.append("domains must not contain empty names")
    if len(set(domains)) != len(domains):
        problems.append("domains must be unique")
    if len(set(domains)) < MIN_DOMAIN_COUNT:
        problems.append(f"at least {MIN_DOMAIN_COUNT} domains are required")

    floor = config.escalation_rules.low_confidence_floor
    if floor is not None:
        for agent_type in config.sequence_order:
            if floor > config.threshold_for(agent_type):
                problems.append(
                    f"low_confidence_floor exceeds the threshold of '{agent_type.value}'"
                )

    return problems


class WorkflowConfigRegistry:
    """Installed per-city configs, read-mostly and shared by all workflows."""

    def __init__(self, default: Optional[WorkflowConfig] = None):
        self.default = default or WorkflowConfig()
        self._configs: Dict[str, WorkflowConfig] = {}

    def install(
        self, city_id: str, config: Union[WorkflowConfig, Mapping[str, Any]]
    ) -> WorkflowConfig:
        """Validate and install a config for new workflows of ``city_id``.

        Raises:
            InvalidConfigError: If the config is malformed or violates an invariant.
        """
        if not isinstance(config, WorkflowConfig):
            try:
                config = WorkflowConfig.model_validate(config)
            except ValidationError as e:
                raise InvalidConfigError(
                    [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
                ) from e

        problems = validate_workflow_config(config)
        if problems:
            logger.warning(
                "Rejected workflow config",
                extra={"city_id": city_id, "problems": problems},
            )
            raise InvalidConfigError(problems)

        snapshot = config.model_copy(deep=True)
        self._configs[city_id] = snapshot
        logger.info(
            "Installed workflow config",
            extra={
                "city_id": city_id,
                "sequence_order": [a.value for a in snapshot.sequence_order],
            },
        )
        return snapshot

    def get(self, city_id: str) -> WorkflowConfig:
        return self._configs.get(city_id, self.default)
