"""
Result Aggregator - merges unit outcomes of one run into an ordered flag list

Outcomes may arrive in any order. Each unit owns a pre-sized slot at its
catalog index and slots are flushed contiguously, so the flag list grows in
catalog order and is never reordered. All failures collapse into a single
synthetic error flag placed where the first failing slot is flushed.
"""
from typing import List, Optional, Sequence, Set

from record_flags.components.contracts import (FlagDescriptor, FlagSeverity,
                                               UnitOutcome)
from record_flags.core.logging_config import LoggingConfig

logger = LoggingConfig.get_logger(__name__)

DEFAULT_ERROR_HEADER = "Component Error"


class ResultAggregator:
    """Aggregates the outcomes of a single run"""

    def __init__(self, run_id: str, unit_ids: Sequence[str], error_header: str = DEFAULT_ERROR_HEADER):
        self.run_id = run_id
        self.unit_ids = list(unit_ids)
        self.error_header = error_header

        self._slots: List[Optional[UnitOutcome]] = [None] * len(self.unit_ids)
        self._next_slot = 0
        self._flags: List[FlagDescriptor] = []
        self._error_index: Optional[int] = None
        self._failure_reasons: List[str] = []
        self._failed_units: List[str] = []

    @property
    def flags(self) -> List[FlagDescriptor]:
        return list(self._flags)

    @property
    def has_failures(self) -> bool:
        """True as soon as any failure is accepted, even one not yet flushed"""
        return bool(self._failed_units)

    @property
    def failure_reasons(self) -> List[str]:
        return list(self._failure_reasons)

    @property
    def pending(self) -> Set[str]:
        """Unit ids that have not reported yet"""
        return {uid for uid, slot in zip(self.unit_ids, self._slots) if slot is None}

    @property
    def is_complete(self) -> bool:
        return all(slot is not None for slot in self._slots)

    def _slot_for(self, outcome: UnitOutcome) -> Optional[int]:
        if outcome.slot is not None:
            if 0 <= outcome.slot < len(self._slots) and self.unit_ids[outcome.slot] == outcome.unit_id:
                return outcome.slot
            return None
        for index, unit_id in enumerate(self.unit_ids):
            if unit_id == outcome.unit_id and self._slots[index] is None:
                return index
        return None

    def accept(self, outcome: UnitOutcome) -> bool:
        """
        Merge one outcome

        Idempotent: an outcome for a slot that already reported, for another
        run, or for a unit not in this run is ignored.

        Returns:
            True if the outcome changed the aggregate
        """
        if outcome.run_id is not None and outcome.run_id != self.run_id:
            logger.debug(
                f"Ignoring outcome of {outcome.unit_id} from run {outcome.run_id}",
                extra={"run_id": self.run_id, "unit_id": outcome.unit_id},
            )
            return False

        index = self._slot_for(outcome)
        if index is None or self._slots[index] is not None:
            return False

        self._slots[index] = outcome
        if outcome.is_failure:
            self._failed_units.append(outcome.unit_id)
        self._flush()
        return True

    def _flush(self) -> None:
        while self._next_slot < len(self._slots) and self._slots[self._next_slot] is not None:
            outcome = self._slots[self._next_slot]
            if outcome.is_failure:
                self._add_failure(outcome.failure_reason)
            else:
                self._flags.extend(outcome.flags)
            self._next_slot += 1

    def _add_failure(self, reason: str) -> None:
        if reason in self._failure_reasons:
            return
        self._failure_reasons.append(reason)
        error_flag = FlagDescriptor(
            severity=FlagSeverity.ERROR,
            header=self.error_header,
            body="\n".join(self._failure_reasons),
        )
        if self._error_index is None:
            self._error_index = len(self._flags)
            self._flags.append(error_flag)
        else:
            # Position is fixed at first failure; only the body grows
            self._flags[self._error_index] = error_flag
