from __future__ import annotations

import hashlib
import hmac
import os
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from itsdangerous import BadSignature, URLSafeSerializer
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deptportal.app_logger import get_logger
from deptportal.database import SessionLocal, engine, get_db
from deptportal.errors import DuplicateFine, FineNotFound, PipelineError, StudentNotFound
from deptportal.fines import (
    assess_for_date,
    bulk_delete_fines,
    create_manual_fine,
    delete_fine,
    list_fines,
    preview_fines_for_date,
    recalculate_fine_total,
    update_fine_status,
)
from deptportal.holidays import import_holidays_csv, reschedule_history
from deptportal.models import Base, Student, User, serialize
from deptportal.pipeline import run_pipeline
from deptportal.scheduling import now_local, parse_iso_date, schedule_info, today_local
from deptportal.selection import selections_for_date
from deptportal.settings import Settings, settings

log = get_logger("api")
STAFF_ROLES = ("HOD", "STAFF")

app = FastAPI(title="Department Portal - Presentation Selection")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


class LoginIn(BaseModel):
    username: str
    password: str


class FineIn(BaseModel):
    student_id: str
    fine_type: str = "other"
    reference_date: date
    amount: float = Field(gt=0)
    payment_status: str = "pending"
    description: Optional[str] = None


class FineStatusIn(BaseModel):
    status: str
    notes: Optional[str] = None


class BulkDeleteIn(BaseModel):
    fine_ids: list[str]


class AssessIn(BaseModel):
    date: str


def get_settings() -> Settings:
    return settings


def serializer_for(cfg: Settings) -> URLSafeSerializer:
    return URLSafeSerializer(cfg.session_secret, salt="deptportal")


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 200_000)
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt_hex, _, digest_hex = stored.partition("$")
    candidate = hash_password(password, bytes.fromhex(salt_hex))
    return hmac.compare_digest(candidate.partition("$")[2], digest_hex)


def user_from_token(token: str, db: Session, cfg: Settings) -> Optional[User]:
    try:
        payload = serializer_for(cfg).loads(token)
    except BadSignature:
        return None
    return db.get(User, payload.get("user_id"))


def current_user(session_token: str = Query(...), db: Session = Depends(get_db), cfg: Settings = Depends(get_settings)) -> User:
    user = user_from_token(session_token, db, cfg)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def require_staff(user: User = Depends(current_user)) -> User:
    if user.role not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="HOD or STAFF role required")
    return user


def require_trigger(
    x_cron_secret: Optional[str] = Header(None),
    session_token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    cfg: Settings = Depends(get_settings),
) -> None:
    if not cfg.cron_secret:
        return
    if x_cron_secret and hmac.compare_digest(x_cron_secret, cfg.cron_secret):
        return
    if session_token:
        user = user_from_token(session_token, db, cfg)
        if user and user.role in STAFF_ROLES:
            return
    raise HTTPException(status_code=401, detail="Unauthorized")


def parse_date_param(raw: Optional[str]) -> date:
    if not raw:
        raise HTTPException(status_code=400, detail="date parameter is required (YYYY-MM-DD)")
    try:
        return parse_iso_date(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD") from exc


@app.on_event("startup")
def startup():
    Base.metadata.create_all(engine)
    if settings.admin_username and settings.admin_password:
        with SessionLocal() as db:
            if not db.scalar(select(User).where(User.username == settings.admin_username)):
                db.add(User(username=settings.admin_username, password_hash=hash_password(settings.admin_password), role="HOD"))
                db.commit()


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db), cfg: Settings = Depends(get_settings)):
    user = db.scalar(select(User).where(User.username == payload.username))
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"session_token": serializer_for(cfg).dumps({"user_id": user.id}), "role": user.role}


def _run_selection(date_param: Optional[str], db: Session, cfg: Settings):
    target = parse_date_param(date_param) if date_param is not None else None
    try:
        report = run_pipeline(db, cfg, target_date=target)
    except (SQLAlchemyError, PipelineError) as exc:
        db.rollback()
        log.exception("Selection run failed")
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
    return report.as_dict()


@app.get("/selection/run")
def run_selection(
    date: Optional[str] = Query(None),
    _: None = Depends(require_trigger),
    db: Session = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    return _run_selection(date, db, cfg)


@app.post("/selection/run")
def run_selection_post(
    date: Optional[str] = Query(None),
    _: None = Depends(require_trigger),
    db: Session = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    return _run_selection(date, db, cfg)


@app.get("/selection/status")
def selection_status(date: Optional[str] = Query(None), db: Session = Depends(get_db)):
    day = parse_date_param(date)
    rows = []
    for sel in selections_for_date(db, day):
        item = serialize(sel)
        student = db.get(Student, sel.student_id)
        item["student"] = {"register_number": student.register_number, "name": student.name} if student else None
        rows.append(item)
    return {"date": day.isoformat(), "count": len(rows), "selections": rows}


@app.get("/selection/schedule")
def selection_schedule(cfg: Settings = Depends(get_settings)):
    return schedule_info(now_local(cfg), cfg)


@app.get("/holidays/reschedules")
def list_reschedules(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db), _: User = Depends(require_staff)):
    history = reschedule_history(db, limit)
    return {"history": history, "count": len(history)}


@app.post("/holidays/import")
def import_holidays(file: UploadFile = File(...), db: Session = Depends(get_db), _: User = Depends(require_staff)):
    data = file.file.read().decode("utf-8-sig")
    return import_holidays_csv(db, data)


@app.get("/fines")
def get_fines(
    class_year: Optional[str] = None,
    status: Optional[str] = None,
    fine_type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_staff),
):
    start = parse_date_param(date_from) if date_from else None
    end = parse_date_param(date_to) if date_to else None
    fines = list_fines(db, class_year, status, fine_type, start, end)
    return {"fines": fines, "count": len(fines)}


@app.post("/fines")
def post_fine(payload: FineIn, db: Session = Depends(get_db), _: User = Depends(require_staff)):
    try:
        fine = create_manual_fine(db, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StudentNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DuplicateFine as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return serialize(fine)


@app.patch("/fines/{fine_id}/status")
def patch_fine_status(fine_id: str, payload: FineStatusIn, db: Session = Depends(get_db), _: User = Depends(require_staff)):
    try:
        fine = update_fine_status(db, fine_id, payload.status, payload.notes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FineNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize(fine)


@app.delete("/fines/{fine_id}")
def remove_fine(fine_id: str, db: Session = Depends(get_db), _: User = Depends(require_staff)):
    try:
        delete_fine(db, fine_id)
    except FineNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted"}


@app.post("/fines/bulk-delete")
def remove_fines(payload: BulkDeleteIn, db: Session = Depends(get_db), _: User = Depends(require_staff)):
    return {"deleted": bulk_delete_fines(db, payload.fine_ids)}


@app.post("/fines/assess")
def assess_fines(payload: AssessIn, db: Session = Depends(get_db), cfg: Settings = Depends(get_settings), _: User = Depends(require_staff)):
    day = parse_date_param(payload.date)
    if day > today_local(cfg):
        raise HTTPException(status_code=400, detail="Cannot create fines for future dates")
    try:
        result = assess_for_date(db, day, cfg)
    except SQLAlchemyError as exc:
        db.rollback()
        log.exception("Fine assessment for %s failed", day)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
    return result.as_dict()


@app.get("/fines/preview")
def preview_fines(date: Optional[str] = Query(None), db: Session = Depends(get_db), cfg: Settings = Depends(get_settings), _: User = Depends(require_staff)):
    return preview_fines_for_date(db, parse_date_param(date), cfg)


@app.post("/students/{student_id}/fine-total/recalculate")
def recalculate_total(student_id: str, db: Session = Depends(get_db), _: User = Depends(require_staff)):
    try:
        total = recalculate_fine_total(db, student_id)
    except StudentNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"student_id": student_id, "total_fine_amount": total}
