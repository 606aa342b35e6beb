from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from datetime import date
import io
from pydantic import BaseModel, Field
import logging

from ....config import Settings, get_settings
from ....database import get_db
from ....models.qc_models import QCLevelEnum, QCReport
from ....qc.reports import (
    QCReportService, QCDataError, EquipmentNotFoundError, LotNotFoundError,
    ReportNotFoundError, InactiveLotError, ConflictError,
)
from ....qc.westgard import (
    StatisticalBaseline, WestgardEvaluator, DEFAULT_RULE_CHECKS, EXTENDED_RULE_CHECKS, describe_rules,
)
from ....utils.monitoring import track_performance

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/qc", tags=["Quality Control"])

# Pydantic models for request/response
class EquipmentRequest(BaseModel):
    name: str
    model: Optional[str] = None
    serial_number: Optional[str] = None
    location: Optional[str] = None

class LotParameter(BaseModel):
    mean: float
    sd: float = Field(ge=0)
    unit: Optional[str] = None

class QCLotRequest(BaseModel):
    equipment_id: int
    lot_number: str
    expiration_date: Optional[date] = None
    manufacturer: Optional[str] = None
    qc_params: Dict[QCLevelEnum, Dict[str, LotParameter]] = Field(default_factory=dict)

class QCLotUpdateRequest(BaseModel):
    lot_number: Optional[str] = None
    expiration_date: Optional[date] = None
    manufacturer: Optional[str] = None
    # Replaces the whole level/analyte map when given
    qc_params: Optional[Dict[QCLevelEnum, Dict[str, LotParameter]]] = None

class QCReportSubmission(BaseModel):
    equipment_id: int
    lot_number: str
    level: QCLevelEnum
    # Raw form values; blanks and non-numeric entries are dropped, not coerced
    values: Dict[str, Any]
    technician: Optional[str] = None
    run_date: Optional[date] = None

class ReportValidationRequest(BaseModel):
    validated_by: str

class WestgardEvaluationRequest(BaseModel):
    value: float
    mean: Optional[float] = None
    sd: Optional[float] = None
    history: List[float] = Field(default_factory=list)
    extended_rules: Optional[bool] = None

def get_report_service(db: Session = Depends(get_db),
                       settings: Settings = Depends(get_settings)) -> QCReportService:
    return QCReportService(db, settings)

def _http_error(error: QCDataError) -> HTTPException:
    if isinstance(error, (EquipmentNotFoundError, LotNotFoundError, ReportNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InactiveLotError, ConflictError)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))

def _lot_params_to_json(qc_params: Dict[QCLevelEnum, Dict[str, LotParameter]]) -> Dict[str, Any]:
    return {
        level.value: {analyte: param.model_dump() for analyte, param in params.items()}
        for level, params in qc_params.items()
    }

def _report_to_dict(report: QCReport) -> Dict[str, Any]:
    return {
        "report_id": report.report_id,
        "equipment_id": report.equipment_id,
        "lot_number": report.lot_number,
        "level": report.level,
        "run_date": report.run_date.isoformat(),
        "technician": report.technician,
        "values": report.values,
        "status": report.status.value,
        "westgard_rules": list(report.westgard_rules or []),
        "is_validated": bool(report.is_validated),
        "validated_by": report.validated_by,
        "validated_at": report.validated_at.isoformat() if report.validated_at else None,
    }

@router.post("/equipment", response_model=Dict)
@track_performance
async def create_equipment(
    request: EquipmentRequest,
    service: QCReportService = Depends(get_report_service)
):
    """Register a piece of laboratory equipment"""
    try:
        equipment = service.create_equipment(
            name=request.name,
            model=request.model,
            serial_number=request.serial_number,
            location=request.location
        )
        return {
            "success": True,
            "equipment_id": equipment.id,
            "name": equipment.name
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error creating equipment: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/lots", response_model=Dict)
@track_performance
async def create_qc_lot(
    lot_request: QCLotRequest,
    service: QCReportService = Depends(get_report_service)
):
    """Create a control lot with per-level analyte targets; it starts inactive"""
    try:
        lot = service.create_lot(
            equipment_id=lot_request.equipment_id,
            lot_number=lot_request.lot_number,
            qc_params=_lot_params_to_json(lot_request.qc_params),
            expiration_date=lot_request.expiration_date,
            manufacturer=lot_request.manufacturer
        )
        return {
            "success": True,
            "lot_id": lot.id,
            "lot_number": lot.lot_number,
            "is_active": lot.is_active,
            "message": "QC lot created successfully"
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error creating QC lot: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.put("/lots/{lot_id}", response_model=Dict)
@track_performance
async def update_qc_lot(
    lot_id: int,
    update: QCLotUpdateRequest,
    service: QCReportService = Depends(get_report_service)
):
    """Edit a lot's targets, expiration date or lot number"""
    try:
        lot = service.update_lot(
            lot_id,
            lot_number=update.lot_number,
            qc_params=_lot_params_to_json(update.qc_params) if update.qc_params is not None else None,
            expiration_date=update.expiration_date,
            manufacturer=update.manufacturer
        )
        return {
            "success": True,
            "lot_id": lot.id,
            "lot_number": lot.lot_number,
            "is_active": lot.is_active,
            "expiration_date": lot.expiration_date.isoformat() if lot.expiration_date else None,
            "qc_params": lot.qc_params,
            "message": "QC lot updated successfully"
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error updating QC lot: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/lots/{lot_id}/activate", response_model=Dict)
@track_performance
async def activate_qc_lot(
    lot_id: int,
    service: QCReportService = Depends(get_report_service)
):
    """Activate a lot; the equipment's other lots are deactivated"""
    try:
        lot = service.activate_lot(lot_id)
        return {
            "success": True,
            "lot_id": lot.id,
            "lot_number": lot.lot_number,
            "is_active": lot.is_active
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error activating QC lot: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/reports", response_model=Dict)
@track_performance
async def submit_qc_report(
    submission: QCReportSubmission,
    service: QCReportService = Depends(get_report_service)
):
    """Submit one set of control values for Westgard evaluation"""
    try:
        result = service.submit_report(
            equipment_id=submission.equipment_id,
            lot_number=submission.lot_number,
            level=submission.level.value,
            values=submission.values,
            technician=submission.technician,
            run_date=submission.run_date
        )

        if result is None:
            return {
                "success": True,
                "report": None,
                "message": "No numeric values to evaluate; nothing was stored"
            }

        report, evaluation = result
        return {
            "success": True,
            "report": _report_to_dict(report),
            "evaluation": evaluation.to_dict(),
            "message": "QC report submitted successfully"
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error submitting QC report: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/reports", response_model=Dict)
@track_performance
async def list_qc_reports(
    equipment_id: int,
    lot_number: str,
    level: QCLevelEnum,
    limit: int = Query(default=50, ge=1, le=500),
    service: QCReportService = Depends(get_report_service)
):
    """Latest reports for one equipment, lot and level (newest first)"""
    try:
        reports = service.list_reports(equipment_id, lot_number, level.value, limit=limit)
        return {
            "success": True,
            "count": len(reports),
            "reports": [_report_to_dict(r) for r in reports]
        }

    except Exception as e:
        logger.error(f"Error listing QC reports: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/reports/export")
@track_performance
async def export_qc_reports(
    equipment_id: int,
    lot_number: str,
    level: QCLevelEnum,
    service: QCReportService = Depends(get_report_service)
):
    """Download the report history of a lot and level as CSV"""
    try:
        service.get_lot(equipment_id, lot_number)
        df = service.export_frame(equipment_id, lot_number, level.value)

        csv_buffer = io.StringIO()
        df.to_csv(csv_buffer, index=False)
        filename = f"qc_reports_{lot_number}_{level.value}.csv"

        return StreamingResponse(
            io.BytesIO(csv_buffer.getvalue().encode('utf-8')),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"}
        )

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error exporting QC reports: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/reports/{report_id}", response_model=Dict)
@track_performance
async def get_qc_report(
    report_id: str,
    service: QCReportService = Depends(get_report_service)
):
    try:
        report = service.get_report(report_id)
        return {
            "success": True,
            "report": _report_to_dict(report),
            "rule_details": describe_rules(list(dict.fromkeys(
                label.split(" for ", 1)[0] for label in report.westgard_rules or []
            )))
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error getting QC report: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/reports/{report_id}/validate", response_model=Dict)
@track_performance
async def validate_qc_report(
    report_id: str,
    request: ReportValidationRequest,
    service: QCReportService = Depends(get_report_service)
):
    """Reviewer sign-off on an evaluated report"""
    try:
        report = service.validate_report(report_id, request.validated_by)
        return {
            "success": True,
            "report": _report_to_dict(report)
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error validating QC report: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/evaluate/westgard", response_model=Dict)
@track_performance
async def evaluate_westgard_rules(
    request: WestgardEvaluationRequest,
    settings: Settings = Depends(get_settings)
):
    """Evaluate a single value against a mean/SD and prior values without storing it"""
    try:
        baseline = StatisticalBaseline.parse({"mean": request.mean, "sd": request.sd})
        extended = settings.westgard_extended_rules if request.extended_rules is None else request.extended_rules
        evaluator = WestgardEvaluator(EXTENDED_RULE_CHECKS if extended else DEFAULT_RULE_CHECKS)

        evaluation = evaluator.evaluate(request.value, request.history, baseline)

        return {
            "success": True,
            "evaluation": evaluation.to_dict(),
            "baseline_valid": baseline is not None,
            "z_score": baseline.z_score(request.value) if baseline else None,
            "control_limits": baseline.control_limits() if baseline else None,
            "rule_details": describe_rules(evaluation.triggered_rules)
        }

    except Exception as e:
        logger.error(f"Error in Westgard evaluation: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/lots/{lot_number}/statistics", response_model=Dict)
@track_performance
async def get_lot_statistics(
    lot_number: str,
    equipment_id: int,
    level: QCLevelEnum,
    service: QCReportService = Depends(get_report_service)
):
    """Get statistical summary for a QC lot"""
    try:
        statistics = service.lot_statistics(equipment_id, lot_number, level.value)
        return {
            "success": True,
            **statistics
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error getting lot statistics: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/lots/{lot_number}/chart", response_model=Dict)
@track_performance
async def get_lot_chart(
    lot_number: str,
    equipment_id: int,
    level: QCLevelEnum,
    analyte: str,
    service: QCReportService = Depends(get_report_service)
):
    """Levey-Jennings points for one analyte"""
    try:
        points = service.chart_points(equipment_id, lot_number, level.value, analyte)
        return {
            "success": True,
            "lot_number": lot_number,
            "analyte": analyte,
            "points": points
        }

    except QCDataError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error building lot chart: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
