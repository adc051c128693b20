# coding: utf-8
"""
Node-facing API endpoints

- POST /node/heartbeat - liveness, probe data and cumulative traffic counters
- POST /node/report    - probe data only
- POST /node/config    - rule set for the node (enabled rules only)

Nodes authenticate every call with node_id + secret in the body.
"""

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.schemas import (
    HeartbeatData,
    HeartbeatResponse,
    NodeConfigRequest,
    NodeConfigResponse,
    NodeHeartbeatRequest,
    NodeReportRequest,
    SimpleResponse,
)
from src.core.exceptions import NodeAuthError
from src.database.engine import get_session
from src.services.metering import HeartbeatProcessor
from src.services.node_config import build_node_config
from src.services.node_service import NodeService, get_node_service

router = APIRouter(prefix="/node", tags=["Node"])


def get_heartbeat_processor(
    node_service: NodeService = Depends(get_node_service),
) -> HeartbeatProcessor:
    return HeartbeatProcessor(node_service)


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def node_heartbeat(
    request: NodeHeartbeatRequest,
    session: AsyncSession = Depends(get_session),
    processor: HeartbeatProcessor = Depends(get_heartbeat_processor),
):
    """
    Node heartbeat

    Marks the node online, caches probe data and accounts traffic. Traffic
    accounting problems are logged and never fail the heartbeat.
    """
    probe = request.probe.model_dump() if request.probe is not None else None

    try:
        result = await processor.process(
            session,
            request.node_id,
            request.secret,
            traffic_stats=request.traffic_stats,
            probe=probe,
        )
    except NodeAuthError:
        logger.warning(f"Heartbeat rejected: invalid secret for node {request.node_id}")
        raise HTTPException(status_code=401, detail="Invalid node secret")

    return HeartbeatResponse(
        data=HeartbeatData(
            rules_updated=result.rules_updated,
            rules_disabled=result.rules_disabled,
            accounting_skipped=result.accounting_skipped,
        )
    )


@router.post("/report", response_model=SimpleResponse)
async def node_report(
    request: NodeReportRequest,
    session: AsyncSession = Depends(get_session),
    node_service: NodeService = Depends(get_node_service),
):
    """Probe-only report"""
    try:
        await node_service.authenticate_node(session, request.node_id, request.secret)
    except NodeAuthError:
        logger.warning(f"Report rejected: invalid secret for node {request.node_id}")
        raise HTTPException(status_code=401, detail="Invalid node secret")

    if request.report is not None:
        await node_service.save_probe_data(request.node_id, request.report.model_dump())

    return SimpleResponse(message="report ok")


@router.post("/config", response_model=NodeConfigResponse)
async def node_config(
    request: NodeConfigRequest,
    session: AsyncSession = Depends(get_session),
    node_service: NodeService = Depends(get_node_service),
):
    """Rule set for the node"""
    try:
        await node_service.authenticate_node(session, request.node_id, request.secret)
    except NodeAuthError:
        logger.warning(f"Config rejected: invalid secret for node {request.node_id}")
        raise HTTPException(status_code=401, detail="Invalid node secret")

    config = await build_node_config(session, request.node_id)
    logger.info(f"Config served to node {request.node_id}: {len(config['rules'])} rules")

    return NodeConfigResponse(data=config)
