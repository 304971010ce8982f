"""
Reporting endpoints
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from .deps import get_current_user, get_engine
from ..reporting import ReportFormat
from ..storage import parse_datetime
from ..workflows import WorkflowEngine


router = APIRouter()


@router.get("/dashboard")
async def get_dashboard(
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    dashboard = await engine.get_dashboard(user_id)
    return dashboard.to_dict()


@router.get("/statistics")
async def get_statistics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    workflow_code: Optional[str] = None,
    format: str = "json",
    engine: WorkflowEngine = Depends(get_engine)
):
    """Workflow statistics for a date range (default: the last 30 days)"""
    end = parse_datetime(end) if end else engine.clock()
    start = parse_datetime(start) if start else end - timedelta(days=30)
    result = await engine.get_statistics(start, end, workflow_code)
    if format == ReportFormat.CSV.value:
        return PlainTextResponse(
            engine.reporting.export_report(result, ReportFormat.CSV), media_type="text/csv"
        )
    return engine.reporting.export_report(result, ReportFormat.DICT)
