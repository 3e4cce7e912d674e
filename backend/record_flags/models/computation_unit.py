"""
Computation unit model - persisted flag catalog configuration
One row per configured provider or flag computation of an object type
"""
from datetime import datetime, timezone

from sqlalchemy import (Boolean, Column, DateTime, Integer, String, Text,
                        UniqueConstraint)

from record_flags.components.contracts import (ComputationUnitDescriptor,
                                               UnitKind)
from record_flags.core.database import Base


class ComputationUnitRecord(Base):
    """Catalog row describing one computation unit"""
    __tablename__ = "record_flag_units"
    __table_args__ = (
        UniqueConstraint("object_type", "unit_id", name="uq_record_flag_units_object_unit"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    object_type = Column(String(255), nullable=False, index=True)
    unit_id = Column(String(255), nullable=False)
    kind = Column(String(50), nullable=False, default=UnitKind.FLAG_COMPUTATION.value)
    required_permission = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def to_descriptor(self) -> ComputationUnitDescriptor:
        """Convert the row to the read-only descriptor used by the engine"""
        return ComputationUnitDescriptor(
            object_type=self.object_type,
            unit_id=self.unit_id,
            kind=self.kind,
            required_permission=self.required_permission,
            is_active=bool(self.is_active),
            order=self.sort_order or 0,
        )

    @classmethod
    def from_descriptor(cls, descriptor: ComputationUnitDescriptor, description: str = None) -> "ComputationUnitRecord":
        return cls(
            object_type=descriptor.object_type,
            unit_id=descriptor.unit_id,
            kind=descriptor.kind.value,
            required_permission=descriptor.required_permission,
            is_active=descriptor.is_active,
            sort_order=descriptor.order,
            description=description,
        )

    def __repr__(self):
        return f"<ComputationUnitRecord({self.object_type}.{self.unit_id}, kind={self.kind}, order={self.sort_order})>"
