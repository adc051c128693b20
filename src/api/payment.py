# coding: utf-8
"""
Payment gateway callback (public)

GET|POST /payment/callback

Security:
- The request is trusted only after the gateway's MD5 signature checks out
- Amount must equal the stored order amount

POST callbacks come from the gateway server and get the plain-text reply it
expects ("success" / "fail"). GET callbacks are browser redirects and get JSON.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.engine import get_session
from src.services.payment_service import PaymentService, get_payment_service

router = APIRouter(prefix="/payment", tags=["Payment"])


async def _callback_params(request: Request) -> dict:
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


@router.api_route("/callback", methods=["GET", "POST"])
async def payment_callback(
    request: Request,
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Gateway payment notification

    Returns:
        POST: "success" or "fail" as text/plain
        GET: {"code": 0 | <status>, "message": ...}
    """
    params = await _callback_params(request)
    logger.debug(f"Payment callback ({request.method}) with {len(params)} params")

    outcome = await service.handle_payment_callback(session, params)

    if request.method == "POST" and params:
        return PlainTextResponse("success" if outcome.acknowledged else "fail")

    code = 0 if outcome.acknowledged and outcome.status_code == 200 else outcome.status_code
    return JSONResponse(
        status_code=outcome.status_code,
        content={"code": code, "message": outcome.message},
    )
