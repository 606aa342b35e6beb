import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple
import logging

import pandas as pd
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings
from ..models.qc_models import ControlLot, Equipment, QCReport
from .aggregator import (
    ReportEvaluation, evaluate_report, filter_numeric_values, history_for_analyte, rules_for_analyte,
)
from .statistics import summarize_lot
from .westgard import StatisticalBaseline, WestgardEvaluator

logger = logging.getLogger(__name__)

class QCDataError(Exception):
    """Base class for lookup and consistency failures in QC data"""

class EquipmentNotFoundError(QCDataError):
    pass

class LotNotFoundError(QCDataError):
    pass

class InactiveLotError(QCDataError):
    pass

class ConflictError(QCDataError):
    """Write rejected because it clashes with stored data"""

class DuplicateLotError(ConflictError):
    pass

class DuplicateEquipmentError(ConflictError):
    pass

class ReportNotFoundError(QCDataError):
    pass

class QCReportService:
    """Loads baselines and history, runs the Westgard evaluation and stores reports"""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.evaluator = WestgardEvaluator.from_settings(settings)

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.error(f"Write rejected by database constraint: {e.orig}")
            raise ConflictError(f"Conflicting QC data: {e.orig}") from e

    # Lookups

    def get_equipment(self, equipment_id: int) -> Equipment:
        equipment = self.db.get(Equipment, equipment_id)
        if equipment is None:
            raise EquipmentNotFoundError(f"Equipment {equipment_id} not found")
        return equipment

    def get_lot(self, equipment_id: int, lot_number: str) -> ControlLot:
        lot = self.db.query(ControlLot).filter(
            ControlLot.equipment_id == equipment_id,
            ControlLot.lot_number == lot_number
        ).first()
        if lot is None:
            raise LotNotFoundError(f"Lot '{lot_number}' not found for equipment {equipment_id}")
        return lot

    def get_lot_by_id(self, lot_id: int) -> ControlLot:
        lot = self.db.get(ControlLot, lot_id)
        if lot is None:
            raise LotNotFoundError(f"Lot {lot_id} not found")
        return lot

    def get_report(self, report_id: str) -> QCReport:
        report = self.db.query(QCReport).filter(QCReport.report_id == report_id).first()
        if report is None:
            raise ReportNotFoundError(f"QC report '{report_id}' not found")
        return report

    def baselines_for(self, lot: ControlLot, level: str) -> Dict[str, Optional[StatisticalBaseline]]:
        """Configured baseline per analyte for one level; None where unusable"""
        return {
            analyte: StatisticalBaseline.parse(params)
            for analyte, params in lot.level_params(level).items()
        }

    def recent_history(self, equipment_id: int, lot_number: str, level: str,
                       limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Value maps of the latest reports, oldest first.

        A single bounded query serves every analyte of a submission.
        """
        limit = limit or self.settings.history_limit
        newest_first = self._reports_query(equipment_id, lot_number, level).order_by(
            QCReport.created_at.desc(), QCReport.id.desc()
        ).limit(limit).all()
        return [dict(report.values or {}) for report in reversed(newest_first)]

    def list_reports(self, equipment_id: int, lot_number: str, level: str,
                     limit: Optional[int] = None) -> List[QCReport]:
        query = self._reports_query(equipment_id, lot_number, level).order_by(
            QCReport.created_at.desc(), QCReport.id.desc()
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def _reports_query(self, equipment_id: int, lot_number: str, level: str):
        return self.db.query(QCReport).filter(
            QCReport.equipment_id == equipment_id,
            QCReport.lot_number == lot_number,
            QCReport.level == level
        )

    def _chronological_reports(self, equipment_id: int, lot_number: str, level: str) -> List[QCReport]:
        return self._reports_query(equipment_id, lot_number, level).order_by(
            QCReport.created_at, QCReport.id
        ).all()

    # Submission

    def evaluate_submission(self, lot: ControlLot, level: str,
                            values: Mapping[str, Any]) -> Optional[ReportEvaluation]:
        baselines = self.baselines_for(lot, level)
        recent = self.recent_history(lot.equipment_id, lot.lot_number, level)
        histories = {analyte: history_for_analyte(recent, analyte) for analyte in values}
        return evaluate_report(values, baselines, histories, self.evaluator)

    def submit_report(self, equipment_id: int, lot_number: str, level: str,
                      values: Mapping[str, Any], technician: Optional[str] = None,
                      run_date: Optional[date] = None) -> Optional[Tuple[QCReport, ReportEvaluation]]:
        """Evaluate and persist one report.

        Returns None without writing anything when no value is numeric.
        """
        self.get_equipment(equipment_id)
        lot = self.get_lot(equipment_id, lot_number)
        if not lot.is_active:
            raise InactiveLotError(f"Lot '{lot_number}' is not active on equipment {equipment_id}")

        evaluation = self.evaluate_submission(lot, level, values)
        if evaluation is None:
            logger.info(f"No numeric values submitted for lot {lot_number} level {level}; nothing stored")
            return None

        report = QCReport(
            report_id=f"QC_{datetime.now(timezone.utc).strftime('%Y%m%d')}_{uuid.uuid4().hex[:10]}",
            equipment_id=equipment_id,
            lot_number=lot_number,
            level=level,
            run_date=run_date or date.today(),
            technician=technician,
            values=filter_numeric_values(values),
            status=evaluation.overall_status,
            westgard_rules=evaluation.all_triggered_rules,
            created_by=technician,
        )
        self.db.add(report)
        self._commit()
        self.db.refresh(report)

        if evaluation.all_triggered_rules:
            logger.warning(
                f"QC report {report.report_id} ({lot_number}/{level}) {evaluation.overall_status.value}: "
                f"{', '.join(evaluation.all_triggered_rules)}"
            )
        else:
            logger.info(f"QC report {report.report_id} ({lot_number}/{level}) ok")
        return report, evaluation

    def validate_report(self, report_id: str, validated_by: str) -> QCReport:
        """Record the reviewer sign-off; evaluation fields are left untouched"""
        report = self.get_report(report_id)
        report.mark_validated(validated_by)
        report.updated_by = validated_by
        self._commit()
        self.db.refresh(report)
        return report

    # Lot configuration

    def create_equipment(self, name: str, model: Optional[str] = None,
                         serial_number: Optional[str] = None,
                         location: Optional[str] = None) -> Equipment:
        if serial_number is not None:
            existing = self.db.query(Equipment).filter(Equipment.serial_number == serial_number).first()
            if existing:
                raise DuplicateEquipmentError(f"Equipment with serial number '{serial_number}' already exists")

        equipment = Equipment(name=name, model=model, serial_number=serial_number, location=location)
        self.db.add(equipment)
        self._commit()
        self.db.refresh(equipment)
        return equipment

    def create_lot(self, equipment_id: int, lot_number: str, qc_params: Dict[str, Any],
                   expiration_date: Optional[date] = None,
                   manufacturer: Optional[str] = None) -> ControlLot:
        self.get_equipment(equipment_id)
        existing = self.db.query(ControlLot).filter(
            ControlLot.equipment_id == equipment_id,
            ControlLot.lot_number == lot_number
        ).first()
        if existing:
            raise DuplicateLotError(f"Lot '{lot_number}' already exists for equipment {equipment_id}")

        lot = ControlLot(
            equipment_id=equipment_id,
            lot_number=lot_number,
            qc_params=qc_params,
            expiration_date=expiration_date,
            manufacturer=manufacturer,
            is_active=False,
        )
        self.db.add(lot)
        self._commit()
        self.db.refresh(lot)
        return lot

    def activate_lot(self, lot_id: int) -> ControlLot:
        """Make one lot current; every other lot of the equipment is deactivated"""
        lot = self.get_lot_by_id(lot_id)

        self.db.query(ControlLot).filter(
            ControlLot.equipment_id == lot.equipment_id,
            ControlLot.id != lot.id
        ).update({ControlLot.is_active: False}, synchronize_session=False)
        lot.is_active = True
        self._commit()
        self.db.refresh(lot)
        logger.info(f"Lot {lot.lot_number} activated on equipment {lot.equipment_id}")
        return lot

    def update_lot(self, lot_id: int, lot_number: Optional[str] = None,
                   qc_params: Optional[Dict[str, Any]] = None,
                   expiration_date: Optional[date] = None,
                   manufacturer: Optional[str] = None) -> ControlLot:
        """Edit a lot's configuration; fields left as None are unchanged.

        New targets apply to every later submission. Stored reports keep the
        status they were evaluated with. A renamed lot takes its reports along
        so its history stays continuous.
        """
        lot = self.get_lot_by_id(lot_id)

        if lot_number is not None and lot_number != lot.lot_number:
            clash = self.db.query(ControlLot).filter(
                ControlLot.equipment_id == lot.equipment_id,
                ControlLot.lot_number == lot_number
            ).first()
            if clash:
                raise DuplicateLotError(f"Lot '{lot_number}' already exists for equipment {lot.equipment_id}")
            self.db.query(QCReport).filter(
                QCReport.equipment_id == lot.equipment_id,
                QCReport.lot_number == lot.lot_number
            ).update({QCReport.lot_number: lot_number}, synchronize_session=False)
            lot.lot_number = lot_number

        if qc_params is not None:
            lot.qc_params = qc_params
        if expiration_date is not None:
            lot.expiration_date = expiration_date
        if manufacturer is not None:
            lot.manufacturer = manufacturer

        self._commit()
        self.db.refresh(lot)
        logger.info(f"Lot {lot.lot_number} updated on equipment {lot.equipment_id}")
        return lot

    # Reporting

    def lot_statistics(self, equipment_id: int, lot_number: str, level: str) -> Dict[str, Any]:
        lot = self.get_lot(equipment_id, lot_number)
        reports = self._chronological_reports(equipment_id, lot_number, level)
        report_values = [report.values or {} for report in reports]

        analytes = {}
        for analyte, params in lot.level_params(level).items():
            baseline = StatisticalBaseline.parse(params)
            summary = summarize_lot(history_for_analyte(report_values, analyte), baseline)
            summary["target_mean"] = baseline.mean if baseline else None
            summary["target_sd"] = baseline.standard_deviation if baseline else None
            summary["unit"] = baseline.unit if baseline else params.get("unit")
            summary["control_limits"] = baseline.control_limits() if baseline else None
            analytes[analyte] = summary

        status_counts: Dict[str, int] = {}
        for report in reports:
            status = report.status.value
            status_counts[status] = status_counts.get(status, 0) + 1

        return {
            "lot_number": lot_number,
            "level": level,
            "is_active": lot.is_active,
            "is_expired": lot.is_expired(),
            "total_reports": len(reports),
            "pending_validation": sum(1 for r in reports if not r.is_validated),
            "status_summary": status_counts,
            "analytes": analytes,
        }

    def chart_points(self, equipment_id: int, lot_number: str, level: str,
                     analyte: str) -> List[Dict[str, Any]]:
        """Levey-Jennings series for one analyte with the rules it fired"""
        lot = self.get_lot(equipment_id, lot_number)
        baseline = StatisticalBaseline.parse(lot.level_params(level).get(analyte))

        points = []
        for report in self._chronological_reports(equipment_id, lot_number, level):
            value = history_for_analyte([report.values or {}], analyte)
            if not value:
                continue
            points.append({
                "report_id": report.report_id,
                "run_date": report.run_date.isoformat(),
                "value": value[0],
                "z_score": baseline.z_score(value[0]) if baseline else None,
                "rules": rules_for_analyte(report.westgard_rules or [], analyte),
            })
        return points

    def export_frame(self, equipment_id: int, lot_number: str, level: str) -> pd.DataFrame:
        """Report history as a table, one column per analyte"""
        rows = []
        for report in self._chronological_reports(equipment_id, lot_number, level):
            row = {
                "report_id": report.report_id,
                "run_date": report.run_date.isoformat(),
                "technician": report.technician,
                "level": report.level,
                "status": report.status.value,
                "westgard_rules": "; ".join(report.westgard_rules or []),
                "is_validated": bool(report.is_validated),
            }
            row.update(report.values or {})
            rows.append(row)
        return pd.DataFrame(rows)
