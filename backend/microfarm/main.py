from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from microfarm.config import settings
from microfarm.middleware.exceptions import register_exception_handlers
from microfarm.routers import crop_plans, crops, health, monitor, orders, recurring_orders
from microfarm.services.scheduler import lifespan

app = FastAPI(
    title="MicroFarm",
    description="Microgreens farm back office: recurring orders, crop plans and stage tasks",
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
app.include_router(recurring_orders.router, prefix="/api/recurring-orders", tags=["recurring-orders"])
app.include_router(orders.router, prefix="/api/orders", tags=["orders"])
app.include_router(crop_plans.router, prefix="/api/crop-plans", tags=["crop-plans"])
app.include_router(crops.router, prefix="/api/crops", tags=["crops"])
app.include_router(monitor.router, prefix="/api/monitor", tags=["monitor"])
