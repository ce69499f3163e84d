import uvicorn
from fastapi import FastAPI
from sqlalchemy import text
import logging

from config import settings
from database import SessionLocal, create_db_and_tables
from reservation_sweeper import ReservationSweeper
from routers.investments import investments_router
from routers.distributions import distributions_router

log = logging.getLogger(__name__)

reservation_sweeper = ReservationSweeper()


async def test_db_connection():
    """Tests the database connection."""
    try:
        async with SessionLocal() as db:
            await db.execute(text("SELECT 1"))
            log.info("Database connection successful")
            return True
    except Exception as e:
        log.error(f"Database connection failed: {e}")
        return False


app = FastAPI(title="Investment Engine")


@app.on_event("startup")
async def startup_event():
    log.info("[*] Initializing application...")

    # Production schemas are managed by Alembic; create_all only adds missing tables
    await create_db_and_tables()
    await test_db_connection()

    if settings.ENABLE_RESERVATION_SWEEPER:
        reservation_sweeper.start()

    log.info("[OK] Application ready")


@app.on_event("shutdown")
async def shutdown_event():
    await reservation_sweeper.stop()


@app.get("/health")
async def health():
    return {"status": "ok", "sweeper_running": reservation_sweeper.running}


app.include_router(investments_router)
app.include_router(distributions_router)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="127.0.0.1", port=8000)
