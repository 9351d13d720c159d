"""Essay Routes

Endpoints:
- POST /api/essays/generate - Metered essay generation
- GET /api/essays - Essays for the current account (newest first)
- GET /api/essays/{essay_id} - One essay
- GET /api/essays/{essay_id}/download?format=markdown|plain
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, Response
import logging

from middleware import get_current_account
from dependencies import get_essay_service
from models import Account, EssayRequest
from services.account_service import to_response
from services.essay_service import EssayService
from services.plan_registry import plan_registry

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/essays", tags=["essays"])


@router.post("/generate")
async def generate_essay(
    body: EssayRequest,
    account: Account = Depends(get_current_account),
    essay_service: EssayService = Depends(get_essay_service),
):
    """Generate an essay if the account is entitled to one.

    A denial is a 402 with the reason, the plans and the one-time price for
    this word count, so the client can offer an upgrade or a single purchase.
    """
    result = await essay_service.generate(account.account_id, body)

    if not result.allowed:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "detail": {
                    "error_code": "UPGRADE_REQUIRED",
                    "reason": result.decision.reason.value,
                    "message": "You have used all essays included in your plan.",
                    "essays_used": result.decision.essays_used,
                    "max_essays": result.decision.max_essays,
                    "plans": plan_registry.get_all_plans(),
                    "essay_price": plan_registry.quote_essay_price(body.word_count),
                }
            },
        )

    essay = result.value
    return {
        "essay": essay.model_dump(mode="json"),
        "entitlement_source": result.decision.source.value,
        "account": to_response(result.account).model_dump(mode="json"),
    }


@router.get("")
async def list_essays(
    account: Account = Depends(get_current_account),
    essay_service: EssayService = Depends(get_essay_service),
):
    essays = await essay_service.list_essays(account.account_id)
    return {"essays": [e.model_dump(mode="json") for e in essays], "total": len(essays)}


@router.get("/{essay_id}")
async def get_essay(
    essay_id: str,
    account: Account = Depends(get_current_account),
    essay_service: EssayService = Depends(get_essay_service),
):
    essay = await essay_service.get_essay(account.account_id, essay_id)
    if not essay:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Essay not found")
    return essay.model_dump(mode="json")


@router.get("/{essay_id}/download")
async def download_essay(
    essay_id: str,
    format: str = Query("markdown"),
    account: Account = Depends(get_current_account),
    essay_service: EssayService = Depends(get_essay_service),
):
    download = await essay_service.render_download(account.account_id, essay_id, format)
    if not download:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Essay not found")
    return Response(
        content=download["body"],
        media_type=download["media_type"],
        headers={"Content-Disposition": f'attachment; filename="{download["filename"]}"'},
    )
