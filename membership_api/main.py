import logging
from datetime import date, datetime

import uvicorn
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from membership_api.config import settings
from membership_api.database import Base, SessionLocal, engine
from membership_api.member_sync import MembershipStatusReconciler
from membership_api.membership_import import MembershipImportError, bulk_import, generate_sample_template
from membership_api.models import MembershipRegistration, User

app = FastAPI(title="Membership API")
logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@app.on_event("startup")
def ensure_membership_tables():
    Base.metadata.create_all(bind=engine, tables=[User.__table__, MembershipRegistration.__table__])
    with engine.begin() as conn:
        conn.execute(
            text("ALTER TABLE users ADD COLUMN IF NOT EXISTS is_boa_member BOOLEAN NOT NULL DEFAULT FALSE")
        )


@app.on_event("startup")
def start_member_sync():
    if not settings.member_sync_enabled:
        logger.info("Membership status sync disabled by configuration")
        return
    reconciler = MembershipStatusReconciler(SessionLocal, settings.member_sync_interval_seconds)
    app.state.member_sync = reconciler
    reconciler.start()


@app.on_event("shutdown")
def stop_member_sync():
    reconciler = getattr(app.state, "member_sync", None)
    if reconciler is not None:
        reconciler.stop()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def json_safe(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [json_safe(v) for v in value]
    return value


def full_name(first_name: str | None, surname: str | None) -> str:
    return " ".join(part.strip() for part in (first_name, surname) if part and part.strip())


def ensure_user_exists(db: Session, user_id: int):
    exists = db.execute(
        text("SELECT 1 FROM users WHERE id = :user_id"),
        {"user_id": user_id},
    ).scalar()
    if not exists:
        raise HTTPException(status_code=404, detail="User not found")


def find_membership_conflict(db: Session, membership_no: str, user_id: int | None = None):
    sql = "SELECT id, first_name, surname FROM users WHERE membership_no = :membership_no"
    params: dict[str, object] = {"membership_no": membership_no}
    if user_id is not None:
        sql += " AND id <> :user_id"
        params["user_id"] = user_id
    return db.execute(text(sql), params).mappings().first()


@app.get("/health")
def health(request: Request, db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    reconciler = getattr(request.app.state, "member_sync", None)
    return {
        "ok": True,
        "member_sync": {
            "scheduled": bool(reconciler and reconciler.is_scheduled),
            "running": bool(reconciler and reconciler.is_running),
        },
    }


@app.post("/api/admin/memberships/bulk-import")
async def bulk_import_memberships(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    if not (file.filename or "").lower().endswith(".xlsx"):
        raise HTTPException(status_code=400, detail="Upload an .xlsx spreadsheet")
    payload = await file.read()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded spreadsheet is empty")

    try:
        result = bulk_import(db, payload)
    except MembershipImportError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=f"Bulk import failed: {exc}") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while importing memberships")
        raise HTTPException(status_code=500, detail="Unexpected server error while importing memberships.") from exc

    return {
        "success": True,
        "message": f"Imported {result['success']} of {result['total']} membership row(s)",
        "data": result,
    }


@app.get("/api/admin/memberships/bulk-import/template")
def download_import_template():
    return Response(
        content=generate_sample_template(),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="membership_import_template.xlsx"'},
    )


@app.get("/api/admin/check-membership-availability")
def check_membership_availability(
    membership_no: str = Query(default=""),
    user_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    number = membership_no.strip()
    if not number:
        raise HTTPException(status_code=400, detail="Membership number is required")

    conflict = find_membership_conflict(db, number, user_id)
    if conflict is not None:
        name = full_name(conflict["first_name"], conflict["surname"])
        return {
            "available": False,
            "message": f"Membership number {number} is already assigned to {name}",
            "conflict": {"user_id": conflict["id"], "user_name": name},
        }
    return {"available": True, "message": f"Membership number {number} is available"}


@app.put("/api/admin/members/{user_id}/membership-no")
def update_membership_number(
    user_id: int,
    membership_no: str = Form(""),
    db: Session = Depends(get_db),
):
    ensure_user_exists(db, user_id)
    number = membership_no.strip()
    if number:
        conflict = find_membership_conflict(db, number, user_id)
        if conflict is not None:
            name = full_name(conflict["first_name"], conflict["surname"])
            raise HTTPException(
                status_code=400,
                detail=f"Membership number {number} is already assigned to {name}",
            )

    try:
        # is_boa_member is left to the status sync.
        db.execute(
            text("UPDATE users SET membership_no = :membership_no WHERE id = :user_id"),
            {"membership_no": number or None, "user_id": user_id},
        )
        db.commit()
    except (IntegrityError, DataError) as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Could not update membership number.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while updating membership number")
        raise HTTPException(status_code=500, detail="Unexpected server error while updating membership number.") from exc

    return {"success": True, "user_id": user_id, "membership_no": number or None}


@app.post("/api/users/verify-membership")
def verify_membership(membership_no: str = Form(""), db: Session = Depends(get_db)):
    number = membership_no.strip()
    if not number:
        raise HTTPException(status_code=400, detail="Membership number is required")

    member = db.execute(
        text(
            """
            SELECT u.id, u.first_name, u.surname, u.email, u.created_at,
                   mr.payment_status AS membership_status
            FROM users u
            LEFT JOIN membership_registrations mr ON mr.email = u.email
            WHERE u.membership_no = :membership_no
              AND u.is_boa_member = TRUE
              AND u.is_active = TRUE
            """
        ),
        {"membership_no": number},
    ).mappings().first()

    if member is None:
        raise HTTPException(
            status_code=404,
            detail="Invalid membership number or user is not an active BOA member",
        )
    if member["membership_status"] and member["membership_status"] != "active":
        raise HTTPException(
            status_code=400,
            detail="No active membership found. Please contact admin for membership activation.",
        )

    return {
        "success": True,
        "message": "Membership verified successfully",
        "verified": True,
        "membership": json_safe(
            {
                "membership_no": number,
                "name": full_name(member["first_name"], member["surname"]),
                "email": member["email"],
                "member_since": member["created_at"],
            }
        ),
    }


def run():
    uvicorn.run("membership_api.main:app", host=settings.app_host, port=settings.app_port)
