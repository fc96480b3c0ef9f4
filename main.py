import logging
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, UploadFile, File, Form, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

import config
from aggregator import SentimentAggregator, FfmpegTranscoder, EmotionApiClient, SyncInProgress
from database import JsonStore, StoreError, COLLECTIONS
from schemas import (
    Account, AccountOut, ScheduleItem, HealthLog, Message, SentimentReport,
    RegisterRequest, LoginRequest, ProfileUpdate, PhoneBatchRequest, BindRequest,
    ScheduleCreate, ScheduleUpdate, HealthLogCreate, MessageCreate, MessageStatusUpdate,
)
from uploads import UploadRouter, StoredUpload, PUBLIC_URL_PREFIX

logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
logger = logging.getLogger(__name__)

# -----------------------------
# Wiring
# -----------------------------

store = JsonStore(config.DB_FILE)
upload_router = UploadRouter(public_dir=config.UPLOADS_DIR, pending_dir=config.PENDING_DIR)
aggregator = SentimentAggregator(
    store,
    pending_dir=config.PENDING_DIR,
    public_dir=config.UPLOADS_DIR,
    transcoder=FfmpegTranscoder(config.FFMPEG_BIN, config.TRANSCODE_SAMPLE_RATE, config.TRANSCODE_TIMEOUT),
    analyzer=EmotionApiClient(config.EMOTION_API_URL, config.EMOTION_API_TIMEOUT),
)


def get_store() -> JsonStore:
    return store


def get_uploads() -> UploadRouter:
    return upload_router


def get_aggregator() -> SentimentAggregator:
    return aggregator


@asynccontextmanager
async def lifespan(app: FastAPI):
    upload_router.ensure_dirs()
    logger.info("Store at %s, uploads at %s", store.path, config.UPLOADS_DIR)
    yield


app = FastAPI(title="Family Care API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(PUBLIC_URL_PREFIX, StaticFiles(directory=config.UPLOADS_DIR, check_dir=False), name="uploads")


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage unavailable"})


# -----------------------------
# Utility helpers
# -----------------------------

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def find_one(records: List[Dict[str, Any]], key: str, value: Any) -> Optional[Dict[str, Any]]:
    return next((r for r in records if r.get(key) == value), None)


def save_upload(uploads: UploadRouter, field: str, owner_id: str, content: bytes,
                filename: Optional[str]) -> StoredUpload:
    try:
        return uploads.save(field, owner_id, content, filename)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# -----------------------------
# Root and health
# -----------------------------

@app.get("/")
def read_root():
    return {"message": "Family Care API running"}


@app.get("/test")
def test_database(store: JsonStore = Depends(get_store)):
    response: Dict[str, Any] = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_file": store.path,
        "collections": {},
    }
    try:
        data = store.read()
        response["collections"] = {name: len(data[name]) for name in COLLECTIONS}
        response["database"] = "✅ Connected & Working" if store.exists() else "⚠️ Empty (file not created yet)"
    except StoreError as e:
        response["database"] = f"❌ Error: {str(e)[:100]}"
    return response


@app.get("/api/did/config")
def did_config():
    # Only the client-side credentials the browser SDK needs
    return {"clientKey": config.DID_CLIENT_KEY, "agentId": config.DID_AGENT_ID}


# -----------------------------
# Accounts
# -----------------------------

@app.post("/api/register", response_model=AccountOut)
def register(req: RegisterRequest, store: JsonStore = Depends(get_store)):
    with store.transaction() as data:
        if find_one(data["users"], "phone", req.phone):
            raise HTTPException(status_code=409, detail="Phone already registered")
        account = Account(id=new_id(), **req.model_dump())
        data["users"].append(account.model_dump())
    logger.info("Registered %s account %s", account.role, account.id)
    return account.model_dump()


@app.post("/api/login", response_model=AccountOut)
def login(req: LoginRequest, store: JsonStore = Depends(get_store)):
    user = find_one(store.get("users"), "phone", req.phone)
    if not user or not secrets.compare_digest(str(user.get("password", "")), req.password):
        raise HTTPException(status_code=401, detail="Invalid phone or password")
    return user


@app.patch("/api/users/{user_id}", response_model=AccountOut)
def update_profile(user_id: str, changes: ProfileUpdate, store: JsonStore = Depends(get_store)):
    with store.transaction() as data:
        user = find_one(data["users"], "id", user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        user.update(changes.model_dump(exclude_unset=True, exclude_none=True))
    return user


@app.post("/api/users/batch")
def users_by_phones(req: PhoneBatchRequest, store: JsonStore = Depends(get_store)):
    wanted = set(req.phones)
    return [
        {"phone": u.get("phone"), "name": u.get("name"), "role": u.get("role")}
        for u in store.get("users")
        if u.get("phone") in wanted
    ]


# -----------------------------
# Avatar assets
# -----------------------------

@app.post("/api/users/{user_id}/image", response_model=AccountOut)
def upload_image(user_id: str, image: UploadFile = File(...),
                 store: JsonStore = Depends(get_store), uploads: UploadRouter = Depends(get_uploads)):
    if not find_one(store.get("users"), "id", user_id):
        raise HTTPException(status_code=404, detail="User not found")
    stored = save_upload(uploads, "image", user_id, image.file.read(), image.filename)
    with store.transaction() as data:
        user = find_one(data["users"], "id", user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        user["did_image_url"] = stored.url
    return user


@app.post("/api/users/{user_id}/voice", response_model=AccountOut)
def upload_voice(user_id: str, voice: UploadFile = File(...),
                 store: JsonStore = Depends(get_store), uploads: UploadRouter = Depends(get_uploads)):
    if not find_one(store.get("users"), "id", user_id):
        raise HTTPException(status_code=404, detail="User not found")
    stored = save_upload(uploads, "voice", user_id, voice.file.read(), voice.filename)
    with store.transaction() as data:
        user = find_one(data["users"], "id", user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        user["did_voice_id"] = f"voice-{user_id}-{int(time.time() * 1000)}"
        user["voiceSampleUrl"] = stored.url
    return user


# -----------------------------
# Family binding (kept symmetric)
# -----------------------------

@app.post("/api/bind-family", response_model=AccountOut)
def bind_family(req: BindRequest, store: JsonStore = Depends(get_store)):
    with store.transaction() as data:
        user = find_one(data["users"], "id", req.userId)
        target = find_one(data["users"], "phone", req.targetPhone)
        if not user or not target:
            raise HTTPException(status_code=404, detail="User or target not found")
        if user["id"] == target["id"]:
            raise HTTPException(status_code=400, detail="Cannot bind an account to itself")
        if target["phone"] not in user.setdefault("boundPhones", []):
            user["boundPhones"].append(target["phone"])
        if user["phone"] not in target.setdefault("boundPhones", []):
            target["boundPhones"].append(user["phone"])
    return user


@app.post("/api/unbind-family", response_model=AccountOut)
def unbind_family(req: BindRequest, store: JsonStore = Depends(get_store)):
    with store.transaction() as data:
        user = find_one(data["users"], "id", req.userId)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        user["boundPhones"] = [p for p in user.get("boundPhones", []) if p != req.targetPhone]
        target = find_one(data["users"], "phone", req.targetPhone)
        if target:
            target["boundPhones"] = [p for p in target.get("boundPhones", []) if p != user["phone"]]
    return user


# -----------------------------
# Sentiment reports
# -----------------------------

@app.get("/api/reports", response_model=List[SentimentReport])
def list_reports(userIds: Optional[List[str]] = Query(None), store: JsonStore = Depends(get_store)):
    reports = store.get("reports")
    if userIds:
        wanted = set(userIds)
        reports = [r for r in reports if r.get("userId") in wanted]
    return reports


def queue_artifact(field: str, user_id: str, upload: UploadFile,
                   store: JsonStore, uploads: UploadRouter) -> Dict[str, Any]:
    if not find_one(store.get("users"), "id", user_id):
        raise HTTPException(status_code=404, detail="User not found")
    stored = save_upload(uploads, field, user_id, upload.file.read(), upload.filename)
    return {"success": True, "filename": stored.filename}


@app.post("/api/queue-audio")
def queue_audio(audio: UploadFile = File(...), userId: str = Form(...),
                store: JsonStore = Depends(get_store), uploads: UploadRouter = Depends(get_uploads)):
    return queue_artifact("audio", userId, audio, store, uploads)


@app.post("/api/queue-video")
def queue_video(video: UploadFile = File(...), userId: str = Form(...),
                store: JsonStore = Depends(get_store), uploads: UploadRouter = Depends(get_uploads)):
    return queue_artifact("video", userId, video, store, uploads)


@app.post("/api/admin/midnight-sync")
async def midnight_sync(aggregator: SentimentAggregator = Depends(get_aggregator)):
    try:
        result = await aggregator.run()
    except SyncInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError:
        raise
    except Exception as e:
        logger.exception("Midnight sync failed")
        raise HTTPException(status_code=500, detail=str(e))

    if result.nothing_to_do:
        return {"message": "No new recordings to analyze"}
    return {"success": True, "count": len(result.reports)}


# -----------------------------
# Health logs
# -----------------------------

@app.post("/api/health-logs", response_model=HealthLog)
def create_health_log(req: HealthLogCreate, store: JsonStore = Depends(get_store)):
    log = HealthLog(id=new_id(), timestamp=now_iso(), **req.model_dump())
    with store.transaction() as data:
        data["healthLogs"].append(log.model_dump())
    return log


@app.get("/api/health-logs/{phone}", response_model=List[HealthLog])
def get_health_logs(phone: str, store: JsonStore = Depends(get_store)):
    return [l for l in store.get("healthLogs") if l.get("userId") == phone]


# -----------------------------
# Schedules
# -----------------------------

@app.get("/api/schedules/{phone}", response_model=List[ScheduleItem])
def get_schedules(phone: str, store: JsonStore = Depends(get_store)):
    return [s for s in store.get("schedules") if s.get("userId") == phone]


@app.post("/api/schedules", response_model=ScheduleItem)
def create_schedule(req: ScheduleCreate, store: JsonStore = Depends(get_store)):
    item = ScheduleItem(id=new_id(), status="pending", **req.model_dump())
    with store.transaction() as data:
        data["schedules"].append(item.model_dump())
    return item


@app.patch("/api/schedules/{schedule_id}", response_model=ScheduleItem)
def update_schedule(schedule_id: str, changes: ScheduleUpdate, store: JsonStore = Depends(get_store)):
    with store.transaction() as data:
        item = find_one(data["schedules"], "id", schedule_id)
        if not item:
            raise HTTPException(status_code=404, detail="Schedule not found")
        item.update(changes.model_dump(exclude_unset=True, exclude_none=True))
    return item


@app.delete("/api/schedules/{schedule_id}")
def delete_schedule(schedule_id: str, store: JsonStore = Depends(get_store)):
    with store.transaction() as data:
        remaining = [s for s in data["schedules"] if s.get("id") != schedule_id]
        if len(remaining) == len(data["schedules"]):
            raise HTTPException(status_code=404, detail="Schedule not found")
        data["schedules"] = remaining
    return {"success": True}


# -----------------------------
# Care messages
# -----------------------------

@app.post("/api/messages", response_model=Message)
def send_message(req: MessageCreate, store: JsonStore = Depends(get_store)):
    msg = Message(id=new_id(), status="pending", timestamp=now_iso(), **req.model_dump())
    with store.transaction() as data:
        data["messages"].append(msg.model_dump())
    return msg


@app.get("/api/messages/{phone}", response_model=List[Message])
def pending_messages(phone: str, store: JsonStore = Depends(get_store)):
    return [m for m in store.get("messages") if m.get("targetPhone") == phone and m.get("status") == "pending"]


@app.put("/api/messages/{message_id}/status", response_model=Message)
def set_message_status(message_id: str, req: MessageStatusUpdate, store: JsonStore = Depends(get_store)):
    with store.transaction() as data:
        msg = find_one(data["messages"], "id", message_id)
        if not msg:
            raise HTTPException(status_code=404, detail="Message not found")
        msg["status"] = req.status
    return msg


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
