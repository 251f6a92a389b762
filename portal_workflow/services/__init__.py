"""Services for the phase workflow."""

from .actors import SYSTEM, Actor, ClientActor, OperatorActor, SystemActor
from .automation_engine import (
    AUTO_ADVANCE_REASON,
    AutomationConfig,
    AutomationEngine,
    TickReport,
)
from .catalog import CatalogCache, CatalogSnapshot, PhaseCatalog, PhaseInfo, ServiceInfo
from .dedupe import DedupeStore, dedupe_key, prune_dedupe_records
from .notification_dispatcher import (
    EventPublisher,
    NotificationDispatcher,
    OutboxDispatcher,
    Recipient,
    WorkflowEvent,
)
from .phase_tracking import AdvanceResult, PhaseTracker, TransitionStatus
from .requirement_gate import GateQuery, GateResult, MissingRequirement, RequirementGate
from .rules import Rule, RuleKey, RuleSet, load_rules

__all__ = [
    # Actors
    "Actor",
    "ClientActor",
    "OperatorActor",
    "SystemActor",
    "SYSTEM",
    # Catalog
    "CatalogCache",
    "CatalogSnapshot",
    "PhaseCatalog",
    "PhaseInfo",
    "ServiceInfo",
    # Tracking
    "AdvanceResult",
    "PhaseTracker",
    "TransitionStatus",
    # Gate
    "GateQuery",
    "GateResult",
    "MissingRequirement",
    "RequirementGate",
    # Rules
    "Rule",
    "RuleKey",
    "RuleSet",
    "load_rules",
    # Dedupe
    "DedupeStore",
    "dedupe_key",
    "prune_dedupe_records",
    # Notifications
    "EventPublisher",
    "NotificationDispatcher",
    "OutboxDispatcher",
    "Recipient",
    "WorkflowEvent",
    # Engine
    "AUTO_ADVANCE_REASON",
    "AutomationConfig",
    "AutomationEngine",
    "TickReport",
]
