"""
Database models for the flag catalog
"""
from record_flags.models.computation_unit import ComputationUnitRecord

__all__ = [
    "ComputationUnitRecord",
]
