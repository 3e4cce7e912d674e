"""
Data contracts shared by the catalog, invoker, aggregator and orchestrator
"""

from record_flags.components.contracts import (AggregateState,
                                               ComputationUnitDescriptor,
                                               FailureNotice, FlagAction,
                                               FlagDescriptor, FlagSeverity,
                                               OrchestrationState,
                                               ResolvedUnits, SharedPayload,
                                               TopLevelNotice, UnitKind,
                                               UnitOutcome)

__all__ = [
    "AggregateState",
    "ComputationUnitDescriptor",
    "FailureNotice",
    "FlagAction",
    "FlagDescriptor",
    "FlagSeverity",
    "OrchestrationState",
    "ResolvedUnits",
    "SharedPayload",
    "TopLevelNotice",
    "UnitKind",
    "UnitOutcome",
]
