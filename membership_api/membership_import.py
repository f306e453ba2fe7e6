from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from io import BytesIO
from typing import Any

from openpyxl import Workbook, load_workbook
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from membership_api.models import MembershipRegistration

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = [
    "email",
    "name",
    "father_name",
    "qualification",
    "year_passing",
    "dob",
    "institution",
    "working_place",
    "sex",
    "age",
    "address",
    "mobile",
    "membership_type",
    "payment_type",
    "transaction_id",
    "amount",
    "valid_from",
    "valid_until",
    "notes",
]
SAMPLE_ROW = {
    "email": "doctor@example.com",
    "name": "Dr. John Doe",
    "father_name": "Mr. Father Name",
    "qualification": "MBBS, MD",
    "year_passing": "2020",
    "dob": "1990-01-15",
    "institution": "Medical College",
    "working_place": "City Hospital",
    "sex": "Male",
    "age": "34",
    "address": "Complete Address",
    "mobile": "9876543210",
    "membership_type": "Yearly",
    "payment_type": "cash",
    "transaction_id": "OFFLINE001",
    "amount": "8000",
    "valid_from": "2026-01-01",
    "valid_until": "2027-01-01",
    "notes": "Any additional notes",
}
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MOBILE_RE = re.compile(r"^\d{10}$")


class MembershipImportError(ValueError):
    """Raised when an upload cannot be imported at all."""


class SpreadsheetParseError(MembershipImportError):
    pass


class EmptySpreadsheetError(MembershipImportError):
    pass


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("\xa0", " ").strip()


def _clean_number_text(value: Any) -> str:
    # Numeric cells come back as floats, e.g. a mobile number as 9876543210.0.
    raw = _clean_text(value)
    if raw.endswith(".0") and raw.replace(".", "", 1).isdigit():
        return raw[:-2]
    return raw


def _is_row_populated(row: tuple[Any, ...] | list[Any]) -> bool:
    return any(_clean_text(v) for v in row)


def _to_date(value: Any, field: str) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = _clean_text(value)
    if not raw:
        return None

    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y"):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{raw}' in {field}")


def _to_int(value: Any, field: str) -> int | None:
    raw = _clean_number_text(value)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid number '{raw}' in {field}") from exc


def _to_amount(value: Any) -> Decimal:
    raw = _clean_text(value).replace(",", "")
    if not raw:
        return Decimal("0")
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{raw}'") from exc


def _optional_text(value: Any) -> str | None:
    return _clean_text(value) or None


def _error_message(exc: Exception) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig)
    return str(exc)


def parse_spreadsheet(content: bytes) -> list[dict[str, Any]]:
    """Read the first worksheet into one dict per data row, keyed by the header row."""
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        raise SpreadsheetParseError(f"Failed to parse spreadsheet: {exc}") from exc

    try:
        sheet = workbook.worksheets[0]
        values = sheet.iter_rows(values_only=True)
        header_row = next(values, None)
        if header_row is None:
            return []
        headers = [_clean_text(h) for h in header_row]

        rows: list[dict[str, Any]] = []
        for row in values:
            if not _is_row_populated(row):
                continue
            record = {}
            for header, value in zip(headers, row):
                if header and value is not None:
                    record[header] = value
            rows.append(record)
        return rows
    finally:
        workbook.close()


def validate_row(row: dict[str, Any], row_number: int) -> dict[str, Any]:
    errors: list[str] = []
    email = _clean_text(row.get("email"))

    if not email:
        errors.append(f"Row {row_number}: Email is required")
    if not _clean_text(row.get("name")):
        errors.append(f"Row {row_number}: Name is required")
    if not _clean_text(row.get("membership_type")):
        errors.append(f"Row {row_number}: Membership type is required")

    if email and not EMAIL_RE.match(email):
        errors.append(f"Row {row_number}: Invalid email format")

    mobile = re.sub(r"\s", "", _clean_number_text(row.get("mobile")))
    if mobile and not MOBILE_RE.match(mobile):
        errors.append(f"Row {row_number}: Mobile must be 10 digits")

    return {"valid": not errors, "errors": errors}


def _record_failure(
    result: dict[str, Any],
    row_number: int,
    email: str,
    errors: list[str],
    summary: str | None = None,
) -> None:
    result["failed"] += 1
    result["failed_details"].append({"row": row_number, "email": email, "errors": errors})
    if summary is not None:
        result["errors"].append(f"Row {row_number}: {summary}")
        return
    for message in errors:
        if message.startswith(f"Row {row_number}:"):
            result["errors"].append(message)
        else:
            result["errors"].append(f"Row {row_number}: {message}")


def _build_registration(row: dict[str, Any], email: str) -> MembershipRegistration:
    return MembershipRegistration(
        email=email,
        name=_optional_text(row.get("name")),
        father_name=_optional_text(row.get("father_name")),
        qualification=_optional_text(row.get("qualification")),
        year_passing=_to_int(row.get("year_passing"), "year_passing"),
        dob=_to_date(row.get("dob"), "dob"),
        institution=_optional_text(row.get("institution")),
        working_place=_optional_text(row.get("working_place")),
        sex=_optional_text(row.get("sex")),
        age=_to_int(row.get("age"), "age"),
        address=_optional_text(row.get("address")),
        mobile=_clean_number_text(row.get("mobile")) or None,
        membership_type=_clean_text(row.get("membership_type")),
        payment_type=_clean_text(row.get("payment_type")) or "offline",
        transaction_id=_optional_text(row.get("transaction_id")),
        payment_status="active",
        payment_method="offline",
        amount=_to_amount(row.get("amount")),
        valid_from=_to_date(row.get("valid_from"), "valid_from"),
        valid_until=_to_date(row.get("valid_until"), "valid_until"),
        notes=_clean_text(row.get("notes")),
        created_at=datetime.now(timezone.utc),
    )


def bulk_import(db: Session, content: bytes) -> dict[str, Any]:
    """Import membership registrations from a spreadsheet upload.

    Rows are processed in sheet order and each imported row is committed on
    its own, so a failing row never undoes the rows before it. Only an
    unreadable or empty spreadsheet fails the whole call.
    """
    rows = parse_spreadsheet(content)
    if not rows:
        raise EmptySpreadsheetError("Spreadsheet is empty or has no data")

    result: dict[str, Any] = {
        "total": len(rows),
        "success": 0,
        "failed": 0,
        "errors": [],
        "success_details": [],
        "failed_details": [],
    }

    for index, row in enumerate(rows):
        row_number = index + 2  # header occupies row 1
        email = _clean_text(row.get("email"))

        validation = validate_row(row, row_number)
        if not validation["valid"]:
            _record_failure(result, row_number, email, validation["errors"])
            continue

        try:
            user = db.execute(
                text("SELECT id FROM users WHERE email = :email"),
                {"email": email},
            ).first()
            if user is None:
                _record_failure(
                    result,
                    row_number,
                    email,
                    ["User not found. Please register user first."],
                    summary=f"User {email} not found",
                )
                continue

            existing = db.execute(
                text("SELECT id FROM membership_registrations WHERE email = :email"),
                {"email": email},
            ).first()
            if existing is not None:
                _record_failure(
                    result,
                    row_number,
                    email,
                    ["Membership already exists"],
                    summary=f"{email} already has membership",
                )
                continue

            db.add(_build_registration(row, email))
            db.commit()
        except (SQLAlchemyError, ValueError) as exc:
            db.rollback()
            _record_failure(result, row_number, email, [_error_message(exc)])
            continue

        result["success"] += 1
        result["success_details"].append(
            {"row": row_number, "email": email, "name": _clean_text(row.get("name"))}
        )

    logger.info(
        "Membership import finished: %s imported, %s failed, %s total",
        result["success"],
        result["failed"],
        result["total"],
    )
    return result


def generate_sample_template() -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Memberships"
    sheet.append(TEMPLATE_FIELDS)
    sheet.append([SAMPLE_ROW[field] for field in TEMPLATE_FIELDS])

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
