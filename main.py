import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from fastapi import FastAPI, HTTPException, Depends, File, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel
from typing import List, Optional
from jose import JWTError, jwt

import services
from bulk_import import bulk_upload_donations, bulk_upload_spendings
from database import db, get_db, utcnow
from policy import summarize_bhandara
from schemas import (
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    AdminCreate,
    BhandaraCreate,
    BhandaraStatusUpdate,
    BhandaraUpdate,
    BulkDonationsRequest,
    BulkSpendingsRequest,
    DonationCreate,
    DonationUpdate,
    DonorCreate,
    DonorUpdate,
    SpendingCreate,
    SpendingItemCreate,
    SpendingItemUpdate,
    SpendingUpdate,
    UploadResult,
)
from spreadsheet import parse_donor_sheet, parse_spending_sheet

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Seed the default super-admin on first start
    if db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; skipping admin seed")
    else:
        services.seed_super_admin(db)
    yield


app = FastAPI(title="Bhandara Ledger API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ===== Security / Auth Setup =====
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

# Reads are public, so a missing token is not an error until a write needs it
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str
    role: str

# Helpers

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


@app.get("/")
def read_root():
    return {"name": "Bhandara Ledger API", "status": "ok"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response

# ===== Auth Endpoints =====
@app.post("/auth/login", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), database=Depends(get_db)):
    # OAuth2PasswordRequestForm expects fields: username, password; the password field carries the PIN
    admin = services.verify_admin(database, form_data.username, form_data.password)
    if not admin:
        raise HTTPException(status_code=400, detail="Invalid username or PIN")
    role = admin.get("role", ROLE_ADMIN)
    token = create_access_token({"sub": str(admin["_id"]), "username": admin["username"], "role": role})
    return {"access_token": token, "token_type": "bearer", "username": admin["username"], "role": role}

async def get_optional_admin(token: Optional[str] = Depends(oauth2_scheme), database=Depends(get_db)):
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        admin_id: str = payload.get("sub")
        if admin_id is None:
            return None
    except JWTError:
        return None
    admin = services.get_admin(database, admin_id)
    if admin is None:
        return None
    return {"admin_id": str(admin["_id"]), "username": admin["username"],
            "role": admin.get("role", ROLE_ADMIN)}

async def get_current_admin(current: Optional[dict] = Depends(get_optional_admin)):
    if current is None:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    return current

async def require_super_admin(current: dict = Depends(get_current_admin)):
    if current["role"] != ROLE_SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="Only super-admin can perform this action")
    return current

@app.get("/auth/me", response_model=dict)
async def read_admin_me(current: dict = Depends(get_current_admin)):
    return current

# ===== Admins =====
@app.post("/admins", response_model=dict)
async def create_admin(payload: AdminCreate, database=Depends(get_db),
                       current: dict = Depends(require_super_admin)):
    return services.create_admin(database, payload)

@app.get("/admins", response_model=List[dict])
async def list_admins(database=Depends(get_db), current: dict = Depends(require_super_admin)):
    return services.list_admins(database)

# ===== Donors =====
@app.post("/donors", response_model=dict)
async def create_donor(payload: DonorCreate, database=Depends(get_db),
                       current: dict = Depends(get_current_admin)):
    return services.create_donor(database, payload)

@app.get("/donors", response_model=List[dict])
async def list_donors(database=Depends(get_db)):
    return services.list_donors(database)

@app.get("/donors/search", response_model=List[dict])
async def search_donors(donor_name: str, secondary_name: Optional[str] = None, database=Depends(get_db)):
    return services.search_donors(database, donor_name, secondary_name)

@app.get("/donors/{donor_id}", response_model=dict)
async def get_donor(donor_id: str, database=Depends(get_db)):
    return services.get_donor(database, donor_id)

@app.patch("/donors/{donor_id}", response_model=dict)
async def update_donor(donor_id: str, payload: DonorUpdate, database=Depends(get_db),
                       current: dict = Depends(get_current_admin)):
    return services.update_donor(database, donor_id, payload)

@app.get("/donors/{donor_id}/donations", response_model=List[dict])
async def list_donor_donations(donor_id: str, database=Depends(get_db)):
    services.get_donor(database, donor_id)
    return services.list_donations(database, donor_id=donor_id)

# ===== Bhandaras =====
@app.post("/bhandaras", response_model=dict)
async def create_bhandara(payload: BhandaraCreate, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    return services.create_bhandara(database, payload)

@app.get("/bhandaras", response_model=List[dict])
async def list_bhandaras(status: Optional[str] = None, database=Depends(get_db)):
    return services.list_bhandaras(database, status)

@app.get("/bhandaras/{bhandara_id}", response_model=dict)
async def get_bhandara(bhandara_id: str, database=Depends(get_db)):
    return services.get_bhandara(database, bhandara_id)

@app.patch("/bhandaras/{bhandara_id}", response_model=dict)
async def update_bhandara(bhandara_id: str, payload: BhandaraUpdate, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    return services.update_bhandara(database, bhandara_id, payload)

@app.post("/bhandaras/{bhandara_id}/status", response_model=dict)
async def update_bhandara_status(bhandara_id: str, payload: BhandaraStatusUpdate, database=Depends(get_db),
                                 current: dict = Depends(get_current_admin)):
    return services.update_bhandara_status(database, bhandara_id, payload.status)

@app.delete("/bhandaras/{bhandara_id}", response_model=dict)
async def delete_bhandara(bhandara_id: str, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    services.delete_bhandara(database, bhandara_id)
    return {"success": True}

@app.get("/bhandaras/{bhandara_id}/details", response_model=dict)
async def bhandara_details(bhandara_id: str, database=Depends(get_db)):
    return services.bhandara_details(database, bhandara_id)

@app.get("/bhandaras/{bhandara_id}/summary", response_model=dict)
async def bhandara_summary(bhandara_id: str, database=Depends(get_db)):
    services.load_bhandara(database, bhandara_id)
    return summarize_bhandara(database, bhandara_id)

# ===== Bulk upload =====
@app.post("/bhandaras/{bhandara_id}/donations/upload", response_model=UploadResult)
async def upload_donations(bhandara_id: str, file: UploadFile = File(...), database=Depends(get_db),
                           current: Optional[dict] = Depends(get_optional_admin)):
    content = await file.read()
    rows, errors = parse_donor_sheet(content, file.filename)
    return bulk_upload_donations(database, rows, bhandara_id, current, errors)

@app.post("/bhandaras/{bhandara_id}/donations/bulk", response_model=UploadResult)
async def bulk_donations(bhandara_id: str, payload: BulkDonationsRequest, database=Depends(get_db),
                         current: Optional[dict] = Depends(get_optional_admin)):
    return bulk_upload_donations(database, payload.rows, bhandara_id, current)

@app.post("/bhandaras/{bhandara_id}/spendings/upload", response_model=UploadResult)
async def upload_spendings(bhandara_id: str, file: UploadFile = File(...), database=Depends(get_db),
                           current: Optional[dict] = Depends(get_optional_admin)):
    content = await file.read()
    rows, errors = parse_spending_sheet(content, file.filename)
    return bulk_upload_spendings(database, rows, bhandara_id, current, errors)

@app.post("/bhandaras/{bhandara_id}/spendings/bulk", response_model=UploadResult)
async def bulk_spendings(bhandara_id: str, payload: BulkSpendingsRequest, database=Depends(get_db),
                         current: Optional[dict] = Depends(get_optional_admin)):
    return bulk_upload_spendings(database, payload.rows, bhandara_id, current)

# ===== Donations =====
@app.post("/donations", response_model=dict)
async def create_donation(payload: DonationCreate, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    return services.create_donation(database, payload, current)

@app.get("/donations", response_model=List[dict])
async def list_donations(bhandara_id: Optional[str] = None, donor_id: Optional[str] = None,
                         database=Depends(get_db)):
    return services.list_donations(database, bhandara_id, donor_id)

@app.get("/donations/{donation_id}", response_model=dict)
async def get_donation(donation_id: str, database=Depends(get_db)):
    return services.get_donation(database, donation_id)

@app.patch("/donations/{donation_id}", response_model=dict)
async def update_donation(donation_id: str, payload: DonationUpdate, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    return services.update_donation(database, donation_id, payload, current)

@app.delete("/donations/{donation_id}", response_model=dict)
async def delete_donation(donation_id: str, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    services.delete_donation(database, donation_id, current)
    return {"success": True}

@app.post("/donations/{donation_id}/lock", response_model=dict)
async def lock_donation(donation_id: str, database=Depends(get_db),
                        current: dict = Depends(get_current_admin)):
    return services.set_donation_lock(database, donation_id, True, current)

@app.post("/donations/{donation_id}/unlock", response_model=dict)
async def unlock_donation(donation_id: str, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    return services.set_donation_lock(database, donation_id, False, current)

# ===== Bhandara spending =====
@app.post("/spendings", response_model=dict)
async def create_spending(payload: SpendingCreate, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    return services.create_spending(database, payload, current)

@app.get("/spendings", response_model=List[dict])
async def list_spendings(bhandara_id: Optional[str] = None, spending_item_id: Optional[str] = None,
                         database=Depends(get_db)):
    return services.list_spendings(database, bhandara_id, spending_item_id)

@app.get("/spendings/{spending_id}", response_model=dict)
async def get_spending(spending_id: str, database=Depends(get_db)):
    return services.get_spending(database, spending_id)

@app.patch("/spendings/{spending_id}", response_model=dict)
async def update_spending(spending_id: str, payload: SpendingUpdate, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    return services.update_spending(database, spending_id, payload, current)

@app.delete("/spendings/{spending_id}", response_model=dict)
async def delete_spending(spending_id: str, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    services.delete_spending(database, spending_id, current)
    return {"success": True}

@app.post("/spendings/{spending_id}/lock", response_model=dict)
async def lock_spending(spending_id: str, database=Depends(get_db),
                        current: dict = Depends(get_current_admin)):
    return services.set_spending_lock(database, spending_id, True, current)

@app.post("/spendings/{spending_id}/unlock", response_model=dict)
async def unlock_spending(spending_id: str, database=Depends(get_db),
                          current: dict = Depends(get_current_admin)):
    return services.set_spending_lock(database, spending_id, False, current)

# ===== Spending items =====
@app.post("/spending-items", response_model=dict)
async def create_spending_item(payload: SpendingItemCreate, database=Depends(get_db),
                               current: dict = Depends(get_current_admin)):
    return services.create_spending_item(database, payload)

@app.get("/spending-items", response_model=List[dict])
async def list_spending_items(database=Depends(get_db)):
    return services.list_spending_items(database)

@app.get("/spending-items/{item_id}", response_model=dict)
async def get_spending_item(item_id: str, database=Depends(get_db)):
    return services.get_spending_item(database, item_id)

@app.patch("/spending-items/{item_id}", response_model=dict)
async def update_spending_item(item_id: str, payload: SpendingItemUpdate, database=Depends(get_db),
                               current: dict = Depends(get_current_admin)):
    return services.update_spending_item(database, item_id, payload)

@app.delete("/spending-items/{item_id}", response_model=dict)
async def delete_spending_item(item_id: str, database=Depends(get_db),
                               current: dict = Depends(get_current_admin)):
    services.delete_spending_item(database, item_id)
    return {"success": True}

# ===== Stats =====
@app.get("/stats", response_model=dict)
async def get_stats(database=Depends(get_db)):
    return services.get_stats(database)

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
