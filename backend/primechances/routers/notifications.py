from __future__ import annotations

from fastapi import APIRouter, Request

from . import deps

router = APIRouter(tags=["notifications"])


@router.get("/notifications")
def list_notifications(request: Request, limit: int = 50):
    caller = deps.current_caller(request)
    d = deps.dispatcher()
    return {
        "ok": True,
        "data": d.list(user_id=caller.user_id, limit=limit),
        "unreadCount": d.unread_count(user_id=caller.user_id),
    }


@router.post("/notifications/{notificationId}/read")
def mark_read(request: Request, notificationId: str):
    caller = deps.current_caller(request)
    return {"ok": True, "notification": deps.dispatcher().mark_as_read(user_id=caller.user_id, notification_id=notificationId)}


@router.post("/notifications/read-all")
def mark_all_read(request: Request):
    caller = deps.current_caller(request)
    return {"ok": True, "updated": deps.dispatcher().mark_all_as_read(user_id=caller.user_id)}
