"""Journal Search Routes

Endpoints:
- POST /api/journals/search - Search (not metered)
- POST /api/journals/saved/{article_id} - Toggle a saved article
- GET /api/journals/saved - Saved article ids
"""
from fastapi import APIRouter, Depends
import logging

from dependencies import get_saved_article_store
from middleware import get_current_account
from models import Account, JournalSearchRequest
from services.journal_search_service import SavedArticleStore, search_articles, toggle_saved

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/journals", tags=["journals"])


@router.post("/search")
async def search(body: JournalSearchRequest, account: Account = Depends(get_current_account)):
    results = search_articles(body)
    logger.info(f"Journal search by {account.account_id}: {results['total']} results")
    return results


@router.post("/saved/{article_id}")
async def toggle_saved_article(
    article_id: str,
    account: Account = Depends(get_current_account),
    store: SavedArticleStore = Depends(get_saved_article_store),
):
    saved = await toggle_saved(store, account.account_id, article_id)
    return {
        "article_id": article_id,
        "saved": saved,
        "message": "Article saved to your collection" if saved else "Article removed from saved list",
    }


@router.get("/saved")
async def list_saved_articles(
    account: Account = Depends(get_current_account),
    store: SavedArticleStore = Depends(get_saved_article_store),
):
    ids = await store.list_ids(account.account_id)
    return {"article_ids": ids, "total": len(ids)}
