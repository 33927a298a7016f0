import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.database import Database

import accounts
import bookings
import database
import locations
import slots
from config import settings
from database import ensure_indexes, get_db
from errors import install_error_handlers
from seed import seed_demo_data

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("parking")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL not set; database endpoints will fail")
    yield


app = FastAPI(title="Parking Reservation API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)

app.include_router(accounts.router)
app.include_router(locations.router)
app.include_router(slots.router)
app.include_router(bookings.router)


@app.get("/")
def read_root():
    return {"message": "Parking Reservation API is running"}


# Seed demo data for quick testing
@app.post("/seed")
def seed_demo(db: Database = Depends(get_db)):
    result = seed_demo_data(db)
    return {"success": True, "data": result}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available" if database.db is None else "✅ Connected",
    }
    try:
        response["collections"] = database.db.list_collection_names() if database.db is not None else []
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.PORT))
    uvicorn.run(app, host="0.0.0.0", port=port)
