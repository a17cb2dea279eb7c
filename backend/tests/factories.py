"""Shared test data: seeded ids, image bytes and auth headers."""

from __future__ import annotations

import datetime as dt
from io import BytesIO

from PIL import Image

from buildledger.core.security import create_access_token
from buildledger.models.enums import UserRole
from buildledger.models.tables import Company, Job, User

COMPANY_ID = 1
OTHER_COMPANY_ID = 2
ADMIN_ID, MANAGER_ID, CREW_ID, INACTIVE_ID, OTHER_ADMIN_ID = 1, 2, 3, 4, 5
JOB_ID = 1

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\ntrailer\n<< /Root 1 0 R >>\n%%EOF\n"


def encode_image(width: int, height: int, fmt: str = "JPEG", color=(200, 120, 40), mode: str = "RGB") -> bytes:
    out = BytesIO()
    Image.new(mode, (width, height), color).save(out, format=fmt)
    return out.getvalue()


def padded_jpeg(width: int, height: int, size: int) -> bytes:
    """A valid JPEG grown to exactly ``size`` bytes.

    Decoders stop at the end-of-image marker, so trailing bytes only change
    the object size.
    """
    data = encode_image(width, height, "JPEG")
    assert size >= len(data)
    return data + b"\0" * (size - len(data))


def seed_rows():
    return [
        Company(id=COMPANY_ID, name="Acme Builders", email="office@acme.test"),
        Company(id=OTHER_COMPANY_ID, name="Other Co", email="office@other.test"),
        User(id=ADMIN_ID, email="admin@acme.test", first_name="Ada", last_name="Admin",
             role=UserRole.ADMIN, company_id=COMPANY_ID),
        User(id=MANAGER_ID, email="manager@acme.test", first_name="Max", last_name="Manager",
             role=UserRole.MANAGER, company_id=COMPANY_ID),
        User(id=CREW_ID, email="crew@acme.test", first_name="Cam", last_name="Crew",
             role=UserRole.CREW_MEMBER, company_id=COMPANY_ID),
        User(id=INACTIVE_ID, email="gone@acme.test", first_name="Ina", last_name="Active",
             role=UserRole.ADMIN, is_active=False, company_id=COMPANY_ID),
        User(id=OTHER_ADMIN_ID, email="admin@other.test", first_name="Oli", last_name="Other",
             role=UserRole.ADMIN, company_id=OTHER_COMPANY_ID),
        Job(id=JOB_ID, name="Maple St remodel", budget=1000.0, company_id=COMPANY_ID,
            start_date=dt.datetime(2024, 1, 1)),
    ]


def auth_headers(user_id: int, company_id: int = COMPANY_ID, role: UserRole = UserRole.ADMIN) -> dict:
    token = create_access_token(user_id, company_id, role.value)
    return {"Authorization": f"Bearer {token}"}
