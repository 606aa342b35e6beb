from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Boolean, ForeignKey, Index, Enum, JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
import enum
from .base import Base, TimeStampedModel, AuditMixin

class QCLevelEnum(enum.Enum):
    LEVEL_1 = "level_1"
    LEVEL_2 = "level_2"
    LEVEL_3 = "level_3"

class EvaluationStatus(enum.Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return _STATUS_SEVERITY[self]

    @classmethod
    def most_severe(cls, *statuses: "EvaluationStatus") -> "EvaluationStatus":
        """Return the worst status (error > warning > ok); ok when empty"""
        return max(statuses, key=lambda s: s.severity, default=cls.OK)

_STATUS_SEVERITY = {
    EvaluationStatus.OK: 0,
    EvaluationStatus.WARNING: 1,
    EvaluationStatus.ERROR: 2,
}

class WestgardRuleEnum(enum.Enum):
    RULE_13S = "1-3s"
    RULE_12S = "1-2s"
    RULE_22S = "2-2s"
    RULE_2OF32S = "2of3-2s"
    RULE_R4S = "R-4s"
    RULE_41S = "4-1s"
    RULE_10X = "10x"

    @property
    def severity(self) -> EvaluationStatus:
        return RULE_SEVERITY[self]

RULE_SEVERITY = {
    WestgardRuleEnum.RULE_13S: EvaluationStatus.ERROR,
    WestgardRuleEnum.RULE_12S: EvaluationStatus.WARNING,
    WestgardRuleEnum.RULE_22S: EvaluationStatus.ERROR,
    WestgardRuleEnum.RULE_2OF32S: EvaluationStatus.ERROR,
    WestgardRuleEnum.RULE_R4S: EvaluationStatus.ERROR,
    WestgardRuleEnum.RULE_41S: EvaluationStatus.ERROR,
    WestgardRuleEnum.RULE_10X: EvaluationStatus.WARNING,
}

class Equipment(TimeStampedModel, AuditMixin):
    __tablename__ = "equipment"

    name = Column(String(100), nullable=False)
    model = Column(String(100))
    serial_number = Column(String(100), unique=True)
    location = Column(String(100))

    # Relationships
    lots = relationship("ControlLot", back_populates="equipment")
    qc_reports = relationship("QCReport", back_populates="equipment")

    def __repr__(self):
        return f"<Equipment(id={self.id}, name='{self.name}')>"

class ControlLot(TimeStampedModel, AuditMixin):
    __tablename__ = "control_lots"

    lot_number = Column(String(50), nullable=False, index=True)
    manufacturer = Column(String(100))
    expiration_date = Column(Date)

    # level -> analyte -> {"mean": ..., "sd": ..., "unit": ...}
    qc_params = Column(JSON, nullable=False, default=dict)

    # New lots stay inactive until explicitly activated
    is_active = Column(Boolean, default=False)

    equipment_id = Column(Integer, ForeignKey('equipment.id'), nullable=False)
    equipment = relationship("Equipment", back_populates="lots")

    __table_args__ = (
        UniqueConstraint('equipment_id', 'lot_number', name='uq_lot_equipment'),
    )

    def level_params(self, level: str) -> Dict[str, Any]:
        """Analyte parameters configured for one control level"""
        return dict((self.qc_params or {}).get(level) or {})

    def is_expired(self, today: Optional[date] = None) -> bool:
        """Check if the control lot is past its expiration date"""
        if self.expiration_date is None:
            return False
        return self.expiration_date < (today or date.today())

    def __repr__(self):
        return f"<ControlLot(lot='{self.lot_number}', active={self.is_active})>"

class QCReport(TimeStampedModel, AuditMixin):
    """One submitted set of control values; never rewritten after evaluation"""
    __tablename__ = "qc_reports"

    report_id = Column(String(50), unique=True, nullable=False, index=True)

    equipment_id = Column(Integer, ForeignKey('equipment.id'), nullable=False)
    equipment = relationship("Equipment", back_populates="qc_reports")
    lot_number = Column(String(50), nullable=False)
    level = Column(String(20), nullable=False)

    run_date = Column(Date, nullable=False, default=date.today)
    technician = Column(String(100))

    # analyte -> numeric value, only values that passed filtering
    values = Column(JSON, nullable=False, default=dict)

    # Westgard evaluation
    status = Column(Enum(EvaluationStatus), nullable=False, default=EvaluationStatus.OK)
    westgard_rules = Column(JSON, nullable=False, default=list)

    # Review
    is_validated = Column(Boolean, default=False)
    validated_by = Column(String(100))
    validated_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_report_equipment_lot_level', 'equipment_id', 'lot_number', 'level'),
        Index('idx_report_status', 'status'),
    )

    def mark_validated(self, validated_by: str) -> None:
        self.is_validated = True
        self.validated_by = validated_by
        self.validated_at = datetime.now(timezone.utc)

    def __repr__(self):
        return f"<QCReport(id='{self.report_id}', status='{self.status.value}')>"
