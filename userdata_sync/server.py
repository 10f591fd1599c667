import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from typing import Optional
from .config import settings
from .errors import RemoteError, StoreError, UnknownUserError
from .models import Server, User, UserPlaybackState

app = FastAPI(title="User Data Sync")
service = None  # SyncService, set by main

class UserDataUpdate(BaseModel):
    played: Optional[bool] = None
    favorite: Optional[bool] = None
    playback_position_ticks: Optional[int] = Field(default=None, ge=0)

class ServerIn(BaseModel):
    name: str
    address: str
    version: Optional[str] = None

class UserIn(BaseModel):
    name: str
    server_id: str
    access_token: Optional[str] = None
    primary_image_tag: Optional[str] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def require_service():
    if service is None:
        raise HTTPException(status_code=503, detail="Not ready")
    return service

@app.get("/healthz")
def healthz():
    if not service:
        return {"status": "starting"}

    last_sync = service.store.state.last_successful_sync
    if time.time() - last_sync > (settings.SYNC_INTERVAL_SECONDS * 3 + 60) and service.store.count_dirty():
        return {"status": "lagging", "last_sync_age": time.time() - last_sync}

    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not service:
        return {"status": "not_ready"}

    store = service.store
    oldest = store.oldest_dirty_mutation()
    oldest_age = time.time() - oldest if oldest is not None else None
    report = service.engine.last_report
    return {
        "online": service.connectivity.is_online,
        "servers": len(store.state.servers),
        "users": len(store.state.users),
        "tracked_items": len(store.state.user_data),
        "dirty_items": store.count_dirty(),
        "oldest_dirty_age": oldest_age,
        "stale": oldest_age is not None and oldest_age > settings.DIRTY_AGE_WARNING_SECONDS,
        "last_sync": store.state.last_successful_sync,
        "last_report": report.model_dump() if report else None,
        "config": {
            "interval": settings.SYNC_INTERVAL_SECONDS,
            "dry_run": settings.DRY_RUN
        }
    }

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    if not service:
        return ""

    s = service.store
    lines = [
        f'userdata_sync_items_tracked {len(s.state.user_data)}',
        f'userdata_sync_items_dirty {s.count_dirty()}',
        f'userdata_sync_last_sync_timestamp {s.state.last_successful_sync}',
        f'userdata_sync_online {int(service.connectivity.is_online)}'
    ]
    return "\n".join(lines)

@app.get("/users/{user_id}/items/{item_id}", response_model=UserPlaybackState)
def get_user_data(user_id: str, item_id: str):
    svc = require_service()
    record = svc.store.get(user_id, item_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No user data for this item")
    return record

@app.post("/users/{user_id}/items/{item_id}", response_model=UserPlaybackState)
async def update_user_data(user_id: str, item_id: str, body: UserDataUpdate):
    svc = require_service()
    try:
        return svc.recorder.record(
            user_id, item_id,
            played=body.played,
            favorite=body.favorite,
            position_ticks=body.playback_position_ticks,
        )
    except UnknownUserError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))

@app.post("/users/{user_id}/items/{item_id}/refresh", response_model=UserPlaybackState)
async def refresh_user_data(user_id: str, item_id: str):
    svc = require_service()
    try:
        return await svc.engine.refresh_item(user_id, item_id)
    except UnknownUserError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RemoteError as e:
        raise HTTPException(status_code=502, detail=str(e))

@app.post("/sync", dependencies=[Depends(get_token)], status_code=202)
async def request_sync():
    require_service().scheduler.request_sync("manual")
    return {"status": "scheduled"}

@app.put("/servers/{server_id}", dependencies=[Depends(get_token)], response_model=Server)
async def put_server(server_id: str, body: ServerIn):
    server = Server(id=server_id, **body.model_dump())
    try:
        require_service().store.upsert_server(server)
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return server

@app.delete("/servers/{server_id}", dependencies=[Depends(get_token)], status_code=204)
async def delete_server(server_id: str):
    if not await require_service().remove_server(server_id):
        raise HTTPException(status_code=404, detail="Unknown server")

@app.put("/users/{user_id}", dependencies=[Depends(get_token)], response_model=User)
async def put_user(user_id: str, body: UserIn):
    user = User(id=user_id, **body.model_dump())
    try:
        require_service().store.upsert_user(user)
    except StoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return user

@app.delete("/users/{user_id}", dependencies=[Depends(get_token)], status_code=204)
async def sign_out(user_id: str):
    if not await require_service().sign_out(user_id):
        raise HTTPException(status_code=404, detail="Unknown user")
