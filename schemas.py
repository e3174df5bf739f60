"""
Database Schemas for the Bhandara ledger

Each Pydantic model in the first section corresponds to a MongoDB collection.
Collection name is the lowercased class name.

Examples:
- Donor -> "donor"
- Bhandara -> "bhandara"
- BhandaraSpending -> "bhandaraspending"

The second section holds request payloads and import rows.
"""

from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

PAYMENT_MODE_CASH = "cash"
PAYMENT_MODE_UPI = "upi"
PAYMENT_MODE_BANK = "bank"
PAYMENT_MODES = (PAYMENT_MODE_CASH, PAYMENT_MODE_UPI, PAYMENT_MODE_BANK)
# Interactive donation entry only offers cash and upi; edits accept all modes.
DONATION_CREATE_PAYMENT_MODES = (PAYMENT_MODE_CASH, PAYMENT_MODE_UPI)

PAYMENT_STATUS_DONE = "done"

BHANDARA_STATUS_ACTIVE = "active"
BHANDARA_STATUS_CLOSED = "closed"
BHANDARA_STATUSES = (BHANDARA_STATUS_ACTIVE, BHANDARA_STATUS_CLOSED)

ROLE_ADMIN = "admin"
ROLE_SUPER_ADMIN = "super-admin"
ADMIN_ROLES = (ROLE_ADMIN, ROLE_SUPER_ADMIN)

MIN_NOTE_LENGTH = 5


# ===== Collections =====

class Admin(BaseModel):
    username: str = Field(..., description="Stored uppercase")
    pin: str = Field(..., description="bcrypt hash of the 5 digit PIN")
    role: str = Field(ROLE_ADMIN, description="admin/super-admin")


class Donor(BaseModel):
    donor_name: str = Field(..., description="Donor name as entered")
    secondary_name: Optional[str] = Field(None, description="Father's or guardian name")


class Bhandara(BaseModel):
    name: str = Field(..., description="Event name")
    date: str = Field(..., description="ISO date string e.g., 2025-05-20")
    description: Optional[str] = Field(None, description="Event description")
    status: str = Field(BHANDARA_STATUS_ACTIVE, description="active/closed")


class SpendingItem(BaseModel):
    name: str = Field(..., description="Unique (case-insensitive) item name")
    description: Optional[str] = None


class Donation(BaseModel):
    donor_id: str
    bhandara_id: str
    amount: float = Field(..., ge=0)
    payment_status: str = Field(PAYMENT_STATUS_DONE, description="Always done")
    payment_mode: str = Field(PAYMENT_MODE_CASH, description="cash/upi/bank")
    date: str = Field(..., description="ISO date string")
    note: Optional[str] = Field(None, description="Mandatory on edit")
    admin_id: str = Field(..., description="Admin who last wrote the record")
    is_locked: bool = False


class BhandaraSpending(BaseModel):
    spending_item_id: str
    bhandara_id: str
    amount: float = Field(..., ge=0)
    payment_mode: str = Field(PAYMENT_MODE_CASH, description="cash/upi/bank")
    date: str = Field(..., description="ISO date string")
    note: Optional[str] = Field(None, description="Mandatory on edit")
    admin_id: str
    is_locked: bool = False


# ===== Request payloads =====

class AdminCreate(BaseModel):
    username: str
    pin: str
    role: str = ROLE_ADMIN


class DonorCreate(BaseModel):
    donor_name: str
    secondary_name: Optional[str] = None


class DonorUpdate(BaseModel):
    donor_name: Optional[str] = None
    # An empty string clears the secondary name
    secondary_name: Optional[str] = None


class BhandaraCreate(BaseModel):
    name: str
    date: str
    description: Optional[str] = None


class BhandaraUpdate(BaseModel):
    name: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None


class BhandaraStatusUpdate(BaseModel):
    status: str


class DonationCreate(BaseModel):
    donor_id: str
    bhandara_id: str
    amount: float
    payment_mode: str = PAYMENT_MODE_CASH


class DonationUpdate(BaseModel):
    amount: Optional[float] = None
    payment_mode: Optional[str] = None
    note: Optional[str] = None


class SpendingCreate(BaseModel):
    spending_item_id: str
    bhandara_id: str
    amount: float
    payment_mode: str = PAYMENT_MODE_CASH


class SpendingUpdate(BaseModel):
    amount: Optional[float] = None
    payment_mode: Optional[str] = None
    note: Optional[str] = None


class SpendingItemCreate(BaseModel):
    name: str
    description: Optional[str] = None


class SpendingItemUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


# ===== Bulk import =====

class DonorRow(BaseModel):
    first_name: str
    last_name: Optional[str] = None
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    row_number: int = Field(..., ge=2, description="Spreadsheet row, header is row 1")


class SpendingRow(BaseModel):
    spending_item: str
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    row_number: int = Field(..., ge=2)


def _unique_row_numbers(rows: list) -> list:
    seen = set()
    for row in rows:
        if row.row_number in seen:
            raise ValueError(f"Duplicate row_number {row.row_number}")
        seen.add(row.row_number)
    return rows


class BulkDonationsRequest(BaseModel):
    rows: List[DonorRow]

    @field_validator("rows")
    @classmethod
    def unique_row_numbers(cls, rows):
        return _unique_row_numbers(rows)


class BulkSpendingsRequest(BaseModel):
    rows: List[SpendingRow]

    @field_validator("rows")
    @classmethod
    def unique_row_numbers(cls, rows):
        return _unique_row_numbers(rows)


class UploadResults(BaseModel):
    success: int = 0
    failed: int = 0
    errors: List[str] = []


class UploadResult(BaseModel):
    success: bool
    message: str
    results: UploadResults
