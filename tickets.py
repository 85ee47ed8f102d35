"""
QR tickets.

A ticket encodes ``{"id": <registration id>, "eventId": <event id>}`` as JSON.
Scanning decodes that payload and checks the participant in.
"""
import io
import json
import logging
from enum import Enum
from typing import Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from pydantic import BaseModel

from schemas import Registration, RegistrationStatus
from storage import StorageService

logger = logging.getLogger(__name__)


class ScanStatus(str, Enum):
    OK = "ok"
    INVALID_FORMAT = "invalid_format"
    INVALID = "invalid"
    NOT_APPROVED = "not_approved"
    ALREADY_ATTENDED = "already_attended"
    ERROR = "error"


class ScanResult(BaseModel):
    status: ScanStatus
    message: str
    registration_id: Optional[str] = None
    participant_name: Optional[str] = None


def ticket_payload(reg: Registration) -> str:
    return json.dumps({"id": reg.id, "eventId": reg.event_id})


def render_ticket_png(reg: Registration, box_size: int = 10, border: int = 4) -> bytes:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(ticket_payload(reg))
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def parse_ticket(data: str) -> dict:
    payload = json.loads(data)
    if not isinstance(payload, dict) or not payload.get("id"):
        raise ValueError("Invalid QR Code")
    return payload


def scan_ticket(storage: StorageService, data: str, event_id: Optional[str] = None) -> ScanResult:
    """Check in the ticket in ``data``; only an OK result changes state."""
    try:
        payload = parse_ticket(data)
    except ValueError:
        return ScanResult(status=ScanStatus.INVALID_FORMAT, message="Invalid QR Code Format")

    reg = storage.get_registration(str(payload["id"]))
    if reg is None or (event_id and reg.event_id != event_id):
        logger.info(f"Rejected ticket {payload['id']}: unknown registration")
        return ScanResult(status=ScanStatus.INVALID, message="Invalid Ticket or Participant not found")

    found = {"registration_id": reg.id, "participant_name": reg.participant_name}
    if reg.status != RegistrationStatus.APPROVED:
        return ScanResult(status=ScanStatus.NOT_APPROVED, message="Participant is not approved yet!", **found)
    if reg.attended:
        return ScanResult(status=ScanStatus.ALREADY_ATTENDED, message="Already marked as attended.", **found)
    if not storage.mark_attendance(reg.id):
        return ScanResult(status=ScanStatus.ERROR, message="Could not mark attendance, please try again.", **found)
    return ScanResult(status=ScanStatus.OK, message="Attendance Marked Successfully!", **found)
