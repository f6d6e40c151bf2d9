"""Session router - which user is acting."""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.web.dependencies import get_invoice_repository, get_state

log = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/session/user")
async def set_acting_user(request: Request):
    body = await request.json()
    user_id = (body.get("user_id") or "").strip()
    if not user_id:
        request.session.pop("user_id", None)
        return {"user_id": None}
    repo = get_invoice_repository()
    if repo.get_user(user_id) is None:
        return JSONResponse({"error_message": "User not found."}, status_code=404)
    request.session["user_id"] = user_id
    return {"user_id": user_id}


@router.get("/api/session")
async def get_session(request: Request):
    state = get_state(request)
    return {"user_id": state.acting_user_id}
