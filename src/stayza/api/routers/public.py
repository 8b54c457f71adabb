"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter

from stayza.api.routes import admin, bookings, webhooks_paystack

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


router.include_router(bookings.router)
router.include_router(admin.router)
router.include_router(webhooks_paystack.router)
