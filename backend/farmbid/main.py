from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from farmbid.config import settings
from farmbid.middleware.exceptions import register_exception_handlers
from farmbid.routers import health, jobs, payments
from farmbid.services.scheduler import lifespan

app = FastAPI(
    title="FarmBid",
    description="Recurring farm-produce contracts and automatic payments",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
app.include_router(payments.router, prefix="/api/payments", tags=["payments"])
